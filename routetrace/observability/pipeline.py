"""
Tracing pipeline 组装：配置 → resource / sampler / instrumentation sources /
噪音过滤 / 自定义 span source / exporter sink。

用法：
    from routetrace.observability import PipelineConfig, assemble

    pipeline = assemble(PipelineConfig.from_settings(settings))
    pipeline.instrument_app(app)
    ...
    pipeline.shutdown()

组装是全有或全无：先校验，校验通过才开始构建；不触碰全局 TracerProvider。
"""

import math
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

from fastapi import FastAPI
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.sdk.trace.sampling import Sampler, TraceIdRatioBased
from opentelemetry.trace import Tracer

from routetrace.log import get_logger
from routetrace.observability.errors import ConfigurationError, ExportError
from routetrace.observability.instrumentation import (
    INBOUND_HTTP,
    InstrumentationSource,
    database_source,
    http_client_source,
    inbound_http_source,
)

logger = get_logger(__name__)

_EXPORT_PATH: Final[str] = "/v1/traces"
_MIN_PORT: Final[int] = 1
_MAX_PORT: Final[int] = 65535

NoiseFilter = Callable[[str | None], bool]


@dataclass(frozen=True)
class PipelineConfig:
    service_name: str
    service_version: str
    sampling_ratio: float
    exporter_host: str
    exporter_port: int
    source_name_prefix: str
    excluded_path_substrings: frozenset[str] = frozenset()
    inbound_http_enabled: bool = True
    http_client_enabled: bool = True
    database_enabled: bool = True
    database_enable_commenter: bool = False
    console_export: bool = False

    @property
    def exporter_endpoint(self) -> str:
        return f"http://{self.exporter_host}:{self.exporter_port}{_EXPORT_PATH}"

    @classmethod
    def from_settings(cls, settings: Any) -> "PipelineConfig":
        """从 config.settings.Settings 构建；无法解析的数值抛 ConfigurationError。"""
        ot = settings.open_telemetry
        return cls(
            service_name=ot.service_name,
            service_version=ot.service_version,
            sampling_ratio=_parse(float, "OpenTelemetry.Sampling.Ratio", ot.sampling_ratio),
            exporter_host=ot.exporter_host,
            exporter_port=_parse(int, "OpenTelemetry.Exporters.Jaeger.AgentPort", ot.exporter_port),
            source_name_prefix=ot.source_name_prefix,
            excluded_path_substrings=frozenset(ot.excluded_paths),
            inbound_http_enabled=ot.instrumentation.inbound_http_enabled,
            http_client_enabled=ot.instrumentation.http_client_enabled,
            database_enabled=ot.instrumentation.database_enabled,
            database_enable_commenter=ot.instrumentation.database_enable_commenter,
            console_export=ot.console_export,
        )


def _parse(kind: type, key: str, value: Any) -> Any:
    if isinstance(value, bool):
        raise ConfigurationError(key, value, f"expected {kind.__name__}, got bool")
    if isinstance(value, kind):
        return value
    try:
        return kind(str(value).strip())
    except ValueError as e:
        raise ConfigurationError(key, value, f"not a valid {kind.__name__}") from e


def validate_config(config: PipelineConfig) -> None:
    ratio = config.sampling_ratio
    if isinstance(ratio, bool) or not isinstance(ratio, (int, float)):
        raise ConfigurationError("sampling_ratio", ratio, "must be a number")
    if math.isnan(ratio) or not 0.0 <= ratio <= 1.0:
        raise ConfigurationError("sampling_ratio", ratio, "must be within [0, 1]")

    port = config.exporter_port
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigurationError("exporter_port", port, "must be an integer")
    if not _MIN_PORT <= port <= _MAX_PORT:
        raise ConfigurationError("exporter_port", port, f"must be within [{_MIN_PORT}, {_MAX_PORT}]")

    if not config.exporter_host or not config.exporter_host.strip():
        raise ConfigurationError("exporter_host", config.exporter_host, "must not be empty")


# ── 噪音过滤 ──

# scheme://authority 之后、path 的第一个 "/" 处
_URL_PATH_ANCHOR: Final[str] = r"(?i)^[a-z][a-z0-9+.-]*://[^/]*(?=/).*?"


def _needles(substrings: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({s.lower() for s in substrings if s}))


def build_noise_filter(substrings: Iterable[str]) -> NoiseFilter:
    """
    返回 path -> bool 谓词：True 表示该请求是噪音（health check、静态资源），不产生 span。
    大小写不敏感的子串匹配；None / 空 path 不算噪音。
    """
    needles = _needles(substrings)

    def is_noise(path: str | None) -> bool:
        if not path:
            return False
        lowered = path.lower()
        return any(needle in lowered for needle in needles)

    return is_noise


def excluded_urls_pattern(substrings: Iterable[str]) -> str:
    """
    同一组子串编译成 FastAPI instrumentor 的 excluded_urls 正则。
    instrumentor 拿它去 search 完整的 scheme://host[:port]/path，所以先锚定到
    authority 之后，子串只会在 path 里命中；instrumentor 会按逗号切分该字符串，逗号需要转义。
    """
    needles = _needles(substrings)
    if not needles:
        return ""
    escaped = (re.escape(n).replace(",", r"\x2c") for n in needles)
    return _URL_PATH_ANCHOR + "(?:" + "|".join(escaped) + ")"


# ── 自定义 span source 过滤 ──


class SourceFilterSpanProcessor(SpanProcessor):
    """
    只放行已注册 source 的 span：instrumentation scope 属于启用的
    instrumentation source，或以自定义 source 前缀开头（末尾的 "*" 可写可不写）。
    """

    def __init__(
        self,
        delegates: Sequence[SpanProcessor],
        scope_names: Iterable[str],
        source_name_prefix: str,
    ):
        self._delegates = tuple(delegates)
        self._scope_names = frozenset(scope_names)
        self._prefix = source_name_prefix.rstrip("*")

    def accepts(self, scope_name: str | None) -> bool:
        if not scope_name:
            return False
        if scope_name in self._scope_names:
            return True
        return bool(self._prefix) and scope_name.startswith(self._prefix)

    def _accepts_span(self, span: ReadableSpan) -> bool:
        scope = span.instrumentation_scope
        return self.accepts(scope.name if scope is not None else None)

    def on_start(self, span: Span, parent_context: Context | None = None) -> None:
        if self._accepts_span(span):
            for delegate in self._delegates:
                delegate.on_start(span, parent_context=parent_context)

    def on_end(self, span: ReadableSpan) -> None:
        if self._accepts_span(span):
            for delegate in self._delegates:
                delegate.on_end(span)

    def shutdown(self) -> None:
        for delegate in self._delegates:
            delegate.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return all(delegate.force_flush(timeout_millis) for delegate in self._delegates)


# ── Exporter sink ──


class ExporterSink(SpanExporter):
    """
    包装真实的 exporter：传输错误只记日志并保存为 last_error，
    永远不会传到请求处理代码。重试与批处理由外层 BatchSpanProcessor 负责。
    """

    def __init__(self, exporter: SpanExporter, endpoint: str):
        self.exporter = exporter
        self.endpoint = endpoint
        self.exported_spans = 0
        self.failed_batches = 0
        self.last_error: ExportError | None = None

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            result = self.exporter.export(spans)
        except Exception as e:
            return self._failed(f"{type(e).__name__}: {e}")
        if result is not SpanExportResult.SUCCESS:
            return self._failed(f"exporter returned {result.name}")
        self.exported_spans += len(spans)
        return result

    def _failed(self, reason: str) -> SpanExportResult:
        self.failed_batches += 1
        self.last_error = ExportError(self.endpoint, reason)
        logger.warning("[tracing] %s", self.last_error)
        return SpanExportResult.FAILURE

    def shutdown(self) -> None:
        self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.exporter.force_flush(timeout_millis)


def _create_span_processor(sink: SpanExporter) -> SpanProcessor:
    return BatchSpanProcessor(sink)


# ── Pipeline ──


@dataclass
class Pipeline:
    config: PipelineConfig
    resource: Resource
    sampler: Sampler
    tracer_provider: TracerProvider
    sources: list[InstrumentationSource]
    noise_filter: NoiseFilter
    source_filter: SourceFilterSpanProcessor
    sink: ExporterSink
    _shut_down: bool = field(default=False, init=False, repr=False)

    def instrument_app(self, app: FastAPI) -> None:
        """启用所有打开的 instrumentation source；入站 HTTP 绑定到该 app。"""
        for source in self.sources:
            source.activate(self.tracer_provider, app=app if source.kind == INBOUND_HTTP else None)

    def get_tracer(self, name: str, version: str | None = None) -> Tracer:
        """手动埋点用的 tracer；name 不在自定义 source 前缀下时其 span 不会被导出。"""
        if not self.source_filter.accepts(name):
            logger.debug(
                "[tracing] tracer %r is outside source prefix %r, its spans are dropped",
                name,
                self.config.source_name_prefix,
            )
        return self.tracer_provider.get_tracer(name, version)

    def status(self) -> dict[str, Any]:
        error = self.sink.last_error
        return {
            "service": self.config.service_name,
            "version": self.config.service_version,
            "sampling_ratio": self.config.sampling_ratio,
            "exporter": {
                "endpoint": self.sink.endpoint,
                "status": "ok" if error is None else "error",
                "last_error": None if error is None else error.reason,
                "exported_spans": self.sink.exported_spans,
                "failed_batches": self.sink.failed_batches,
            },
            "sources": {s.name: s.active for s in self.sources},
            "shut_down": self._shut_down,
        }

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        for source in self.sources:
            source.deactivate()
        self.tracer_provider.shutdown()
        logger.info("[tracing] pipeline for %s shut down", self.config.service_name)


def assemble(config: PipelineConfig) -> Pipeline:
    """
    按顺序组装 tracing pipeline，任何校验失败都抛 ConfigurationError 并中止。
    只建立 exporter sink，不检查连通性；连不上会在之后异步表现为导出失败。
    """
    validate_config(config)

    # 1. resource：service 身份
    resource = Resource.create(
        {SERVICE_NAME: config.service_name, SERVICE_VERSION: config.service_version}
    )

    # 2. sampler：按 trace id 确定性采样，同一 trace 内所有 span 决策一致
    sampler = TraceIdRatioBased(config.sampling_ratio)

    # 3. instrumentation sources
    sources = [
        inbound_http_source(enabled=config.inbound_http_enabled),
        http_client_source(enabled=config.http_client_enabled),
        database_source(
            enabled=config.database_enabled,
            enable_commenter=config.database_enable_commenter,
        ),
    ]

    # 4. 噪音过滤：被排除的 path 不产生入站 span
    noise_filter = build_noise_filter(config.excluded_path_substrings)
    for source in sources:
        if source.kind == INBOUND_HTTP:
            source.options["excluded_urls"] = excluded_urls_pattern(config.excluded_path_substrings)

    # 5 + 6. exporter sink，外面套一层 source filter
    sink = ExporterSink(OTLPSpanExporter(endpoint=config.exporter_endpoint), config.exporter_endpoint)
    processors: list[SpanProcessor] = [_create_span_processor(sink)]
    if config.console_export:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    source_filter = SourceFilterSpanProcessor(
        processors,
        scope_names=[name for s in sources if s.enabled for name in s.scope_names],
        source_name_prefix=config.source_name_prefix,
    )

    tracer_provider = TracerProvider(resource=resource, sampler=sampler)
    tracer_provider.add_span_processor(source_filter)

    logger.info(
        "[tracing] pipeline assembled: service=%s version=%s ratio=%s exporter=%s",
        config.service_name,
        config.service_version,
        config.sampling_ratio,
        config.exporter_endpoint,
    )
    return Pipeline(
        config=config,
        resource=resource,
        sampler=sampler,
        tracer_provider=tracer_provider,
        sources=sources,
        noise_filter=noise_filter,
        source_filter=source_filter,
        sink=sink,
    )
