"""
Instrumentation sources：入站 HTTP / 出站 HTTP client / 数据库驱动。

每个 source 自己决定 span 边界，这里只负责开关、选项，以及记录它产生的
instrumentation scope 名称（供 pipeline 的 source filter 放行）。
"""

from dataclasses import dataclass, field
from typing import Any, Final

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider

from routetrace.log import get_logger

logger = get_logger(__name__)

INBOUND_HTTP: Final[str] = "inbound_http"
HTTP_CLIENT: Final[str] = "http_client"
DATABASE: Final[str] = "database"


@dataclass
class InstrumentationSource:
    name: str
    kind: str
    scope_names: tuple[str, ...]
    options: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    _active: bool = field(default=False, init=False, repr=False)
    _apps: list[FastAPI] = field(default_factory=list, init=False, repr=False)

    @property
    def active(self) -> bool:
        return self._active or bool(self._apps)

    def activate(self, tracer_provider: TracerProvider, app: FastAPI | None = None) -> bool:
        """启用 instrumentor；已启用、被关闭或全局 instrumentor 已被他处持有时返回 False。"""
        if not self.enabled:
            return False

        if self.kind == INBOUND_HTTP:
            if app is None:
                raise ValueError(f"{self.name} needs the FastAPI app to instrument")
            if app in self._apps:
                return False
            FastAPIInstrumentor.instrument_app(
                app, tracer_provider=tracer_provider, **self.options
            )
            self._apps.append(app)
        else:
            if self._active:
                return False
            instrumentor = _global_instrumentor(self.kind)
            if instrumentor.is_instrumented_by_opentelemetry:
                # 已被别的 pipeline 持有：span 会进对方的 provider，这里不接管也不负责卸载
                logger.warning(
                    "[tracing] instrumentation source %s already instrumented elsewhere, skipped",
                    self.name,
                )
                return False
            instrumentor.instrument(
                tracer_provider=tracer_provider, **self.options
            )
            self._active = True

        logger.info("[tracing] instrumentation source %s enabled", self.name)
        return True

    def deactivate(self) -> None:
        if self.kind == INBOUND_HTTP:
            while self._apps:
                FastAPIInstrumentor.uninstrument_app(self._apps.pop())
        elif self._active:
            _global_instrumentor(self.kind).uninstrument()
            self._active = False


def _global_instrumentor(kind: str):
    # BaseInstrumentor 子类是进程级单例
    if kind == HTTP_CLIENT:
        return RequestsInstrumentor()
    if kind == DATABASE:
        return SQLAlchemyInstrumentor()
    raise ValueError(f"unknown instrumentation kind: {kind}")


def inbound_http_source(*, enabled: bool = True) -> InstrumentationSource:
    return InstrumentationSource(
        name="inbound HTTP",
        kind=INBOUND_HTTP,
        # 不同版本的 FastAPI instrumentor 用 fastapi 或 asgi 作为 tracer 名
        scope_names=(
            "opentelemetry.instrumentation.fastapi",
            "opentelemetry.instrumentation.asgi",
        ),
        enabled=enabled,
    )


def http_client_source(*, enabled: bool = True) -> InstrumentationSource:
    return InstrumentationSource(
        name="outbound HTTP client",
        kind=HTTP_CLIENT,
        scope_names=("opentelemetry.instrumentation.requests",),
        enabled=enabled,
    )


def database_source(*, enabled: bool = True, enable_commenter: bool = False) -> InstrumentationSource:
    return InstrumentationSource(
        name="database driver",
        kind=DATABASE,
        scope_names=("opentelemetry.instrumentation.sqlalchemy",),
        options={"enable_commenter": enable_commenter},
        enabled=enabled,
    )
