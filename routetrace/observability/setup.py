"""
一键挂载 Observability：中间件 + instrumentation + /metrics + /health/tracing。
"""

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from routetrace.log import get_logger
from routetrace.observability.metrics import metrics
from routetrace.observability.middleware import (
    METRICS_PATH,
    RequestMetricsMiddleware,
    RouteNameSpanMiddleware,
)
from routetrace.observability.pipeline import Pipeline

logger = get_logger(__name__)


def setup_observability(app: FastAPI, pipeline: Pipeline) -> None:
    """
    在 FastAPI app 上挂载 tracing pipeline。

    必须在 app 开始处理请求之前调用（Starlette 不允许之后再加中间件）。
    """
    # 1. 中间件要在 instrumentation 之前加：老版本 instrumentor 用 add_middleware
    #    把自己插到最外层，这样 span 已经是 current 时我们的中间件才会执行
    app.add_middleware(RequestMetricsMiddleware, skip_path=pipeline.noise_filter)
    app.add_middleware(RouteNameSpanMiddleware)

    # 2. instrumentation sources
    pipeline.instrument_app(app)

    # 3. /metrics（Prometheus 拉取）
    @app.get(METRICS_PATH, include_in_schema=False)
    def prometheus_metrics():
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    # 4. tracing 状态（exporter 最近一次错误等）
    @app.get("/health/tracing", tags=["observability"])
    def health_tracing():
        status = pipeline.status()
        status["status"] = status["exporter"]["status"]
        return status

    # 5. 应用元信息
    metrics.app_info.info(
        {"service": pipeline.config.service_name, "version": pipeline.config.service_version}
    )

    logger.info("[observability] middleware + instrumentation + /metrics + /health/tracing registered")
