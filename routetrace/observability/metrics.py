"""
Prometheus metrics 定义。

HTTP 指标以解析后的 route pattern 作为标签（而不是原始 path），基数有上限。
"""

from prometheus_client import Counter, Histogram, Info


class _Metrics:
    """集中管理所有 Prometheus 指标"""

    def __init__(self):
        # ── HTTP 请求 ──
        self.http_requests_total = Counter(
            "routetrace_http_requests_total",
            "HTTP 请求总数",
            ["method", "route", "status_code"],
        )
        self.http_request_duration_seconds = Histogram(
            "routetrace_http_request_duration_seconds",
            "HTTP 请求延迟 (秒)",
            ["method", "route"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ── Span 重命名 ──
        self.span_enrichment_total = Counter(
            "routetrace_span_enrichment_total",
            "路由解析后 span 重命名结果",
            ["outcome"],  # enriched / no_route / no_span
        )

        # ── 系统 ──
        self.app_info = Info(
            "routetrace_app",
            "应用元信息",
        )


# 单例
metrics = _Metrics()
