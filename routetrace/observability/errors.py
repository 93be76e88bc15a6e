"""Tracing pipeline 的异常类型。"""


class RouteTraceError(Exception):
    """routetrace 所有异常的基类"""


class ConfigurationError(RouteTraceError):
    """
    组装 pipeline 时配置非法（采样率、端口、主机名或无法解析的值）。

    启动期致命错误，不做恢复。
    """

    def __init__(self, key: str, value: object, reason: str):
        self.key = key
        self.value = value
        self.reason = reason
        super().__init__(f"invalid {key}={value!r}: {reason}")


class ExportError(RouteTraceError):
    """导出端不可达或拒收数据。只记录在 sink 上，从不抛给请求处理代码。"""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"span export to {endpoint} failed: {reason}")
