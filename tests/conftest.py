"""
共享 Fixtures: 内存 span exporter / PipelineConfig / Settings 工厂。
"""

from dataclasses import replace

import pytest
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from config.settings import Settings
from routetrace.observability import pipeline as pipeline_module
from routetrace.observability.pipeline import PipelineConfig


@pytest.fixture
def memory_exporter(monkeypatch: pytest.MonkeyPatch) -> InMemorySpanExporter:
    """把 pipeline 的 BatchSpanProcessor 换成同步的内存导出，span 结束即可断言"""
    exporter = InMemorySpanExporter()
    monkeypatch.setattr(
        pipeline_module,
        "_create_span_processor",
        lambda sink: SimpleSpanProcessor(exporter),
    )
    return exporter


@pytest.fixture
def base_config() -> PipelineConfig:
    """只开入站 HTTP，避免测试之间共享 requests / sqlalchemy 的全局 patch"""
    return PipelineConfig(
        service_name="MyApp",
        service_version="1.2.3",
        sampling_ratio=1.0,
        exporter_host="localhost",
        exporter_port=4318,
        source_name_prefix="MyApp",
        excluded_path_substrings=frozenset({"/health"}),
        http_client_enabled=False,
        database_enabled=False,
    )


@pytest.fixture
def make_config(base_config):
    def _make(**overrides) -> PipelineConfig:
        return replace(base_config, **overrides)

    return _make


@pytest.fixture
def make_settings():
    def _make(ratio=1.0, excluded=("/health",), **open_telemetry) -> Settings:
        section = {
            "ServiceName": "MyApp",
            "ServiceVersion": "1.2.3",
            "Sampling": {"Ratio": ratio},
            "ExcludedPaths": list(excluded),
            "Instrumentation": {
                "HttpClient": {"Enabled": False},
                "Database": {"Enabled": False},
            },
            "Exporters": {"Jaeger": {"AgentHost": "localhost", "AgentPort": 4318}},
        }
        section.update(open_telemetry)
        return Settings(raw={"OpenTelemetry": section})

    return _make
