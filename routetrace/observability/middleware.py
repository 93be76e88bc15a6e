"""
FastAPI 中间件：路由解析之后给当前 span 改名 + 打 http.route 标签，并按 route 采集请求指标。

span 必须在路由之前创建，而它的名字只有路由之后才知道，所以分两步：
先拿到 span 句柄，等下游（含路由）跑完，再通过这个句柄改名。
"""

import time
from collections.abc import Callable, MutableMapping
from typing import Any, Final

from opentelemetry import trace
from opentelemetry.trace import Span
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from routetrace.observability.metrics import metrics

HTTP_ROUTE: Final[str] = "http.route"
UNMATCHED_ROUTE: Final[str] = "<unmatched>"
METRICS_PATH: Final[str] = "/metrics"


def resolve_route_pattern(scope: MutableMapping[str, Any]) -> str | None:
    """
    读取路由结果里的原始 route pattern，如 /users/{id}。
    没有匹配（404、纯中间件路径）或 pattern 为空时返回 None。
    """
    route = scope.get("route")
    pattern = getattr(route, "path", None)
    if isinstance(pattern, str) and pattern:
        return pattern
    return None


def enrich_span(span: Span, route_pattern: str | None) -> bool:
    """用 route pattern 覆盖 span 名并设置 http.route；重复调用结果相同。"""
    if not route_pattern:
        return False
    span.update_name(route_pattern)
    span.set_attribute(HTTP_ROUTE, route_pattern)
    return True


class RouteNameSpanMiddleware(BaseHTTPMiddleware):
    """
    把入站 span 的名字从 instrumentation 的默认值改成匹配到的 route pattern。

    必须位于创建 span 的 instrumentation 之内、路由之外。
    不结束也不导出 span；下游异常原样抛出，此时跳过改名。
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        current = trace.get_current_span()
        # 未采样或上游没有建 span：照常处理请求，只是不改名
        span = current if current.is_recording() else None

        response = await call_next(request)

        if span is None:
            metrics.span_enrichment_total.labels(outcome="no_span").inc()
        elif enrich_span(span, resolve_route_pattern(request.scope)):
            metrics.span_enrichment_total.labels(outcome="enriched").inc()
        else:
            metrics.span_enrichment_total.labels(outcome="no_route").inc()
        return response


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """采集每个 HTTP 请求的延迟和计数指标，route 标签取解析后的 pattern。"""

    def __init__(self, app: ASGIApp, skip_path: Callable[[str | None], bool] | None = None):
        super().__init__(app)
        self._skip_path = skip_path

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # 跳过 /metrics 本身和噪音路径
        if path == METRICS_PATH or (self._skip_path is not None and self._skip_path(path)):
            return await call_next(request)

        method = request.method
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        route = resolve_route_pattern(request.scope) or UNMATCHED_ROUTE
        metrics.http_requests_total.labels(
            method=method, route=route, status_code=str(response.status_code)
        ).inc()
        metrics.http_request_duration_seconds.labels(method=method, route=route).observe(elapsed)
        return response
