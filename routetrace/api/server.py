"""
FastAPI 应用入口：进程启动时组装 tracing pipeline，生命周期结束时关闭。
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request

from config.settings import Settings, settings
from routetrace.log import get_logger
from routetrace.observability import Pipeline, PipelineConfig, assemble, setup_observability

logger = get_logger(__name__)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """
    构建 app。pipeline 在这里组装（配置非法直接抛 ConfigurationError，服务起不来），
    而不是在 lifespan 里：lifespan 开始时中间件栈已经建好，无法再挂 instrumentation。
    """
    app_settings = app_settings or settings
    pipeline = assemble(PipelineConfig.from_settings(app_settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "[startup] tracing %s -> %s (ratio=%s)",
            pipeline.config.service_name,
            pipeline.config.exporter_endpoint,
            pipeline.config.sampling_ratio,
        )
        yield
        pipeline.shutdown()

    app = FastAPI(
        title=f"{pipeline.config.service_name} API",
        version=pipeline.config.service_version,
        lifespan=lifespan,
    )
    app.state.tracing_pipeline = pipeline

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/health/live")
    def health_live() -> dict:
        return {"status": "ok"}

    @app.get("/users/{id}")
    def get_user(id: int) -> dict:
        return {"id": id}

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, request: Request) -> dict:
        tracing: Pipeline = request.app.state.tracing_pipeline
        tracer = tracing.get_tracer(f"{tracing.config.source_name_prefix.rstrip('*.')}.orders")
        with tracer.start_as_current_span("load_order") as span:
            span.set_attribute("order.id", order_id)
            if order_id == "missing":
                raise HTTPException(status_code=404, detail="order not found")
            return {"order_id": order_id}

    # Observability: 中间件 + instrumentation + /metrics + /health/tracing
    setup_observability(app, pipeline)
    return app
