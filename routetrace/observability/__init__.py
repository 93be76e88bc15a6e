"""
Observability 模块：OpenTelemetry tracing pipeline + 路由后 span 重命名 + Prometheus metrics。

用法：
    from routetrace.observability import PipelineConfig, assemble, setup_observability

    # 进程启动时组装一次，显式传给需要它的组件
    pipeline = assemble(PipelineConfig.from_settings(settings))
    setup_observability(app, pipeline)

    # 业务代码中手动埋点（tracer 名需在自定义 source 前缀下）
    with pipeline.get_tracer("MyApp.orders").start_as_current_span("load_order"):
        ...
"""

from routetrace.observability.errors import ConfigurationError, ExportError, RouteTraceError
from routetrace.observability.metrics import metrics
from routetrace.observability.middleware import (
    RequestMetricsMiddleware,
    RouteNameSpanMiddleware,
    enrich_span,
    resolve_route_pattern,
)
from routetrace.observability.pipeline import (
    Pipeline,
    PipelineConfig,
    assemble,
    build_noise_filter,
)
from routetrace.observability.setup import setup_observability

__all__ = [
    "ConfigurationError",
    "ExportError",
    "Pipeline",
    "PipelineConfig",
    "RequestMetricsMiddleware",
    "RouteNameSpanMiddleware",
    "RouteTraceError",
    "assemble",
    "build_noise_filter",
    "enrich_span",
    "metrics",
    "resolve_route_pattern",
    "setup_observability",
]
