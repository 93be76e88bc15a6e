"""
统一配置模块
- 配置文件: config/routetrace_config.json（OpenTelemetry / logging / api）
- 本地覆盖: config/routetrace_config.local.json（本地私密配置）
- 环境变量优先覆盖: 键名大写、"." 换成 "__"，如 OPENTELEMETRY__SAMPLING__RATIO
"""

import os
import json
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent / "routetrace_config.json"
_LOCAL_CONFIG_PATH = Path(__file__).parent / "routetrace_config.local.json"

_MISSING = object()


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_raw_config(
    config_path: Path = _CONFIG_PATH, local_path: Optional[Path] = None
) -> Dict[str, Any]:
    """读取 JSON 配置，并叠加同名 .local.json 覆盖。"""
    if local_path is None:
        local_path = config_path.with_name(f"{config_path.stem}.local{config_path.suffix}")
    raw = _load_json(config_path)
    if local_path.exists():
        raw = _deep_merge(raw, _load_json(local_path))
    return raw


def env_key(key: str) -> str:
    """OpenTelemetry.Sampling.Ratio -> OPENTELEMETRY__SAMPLING__RATIO"""
    return key.replace(".", "__").upper()


def get_value(raw: Dict[str, Any], key: str, default: Any = None) -> Any:
    """
    按点分路径取值，环境变量优先，其次配置文件，最后默认值。
    环境变量的值总是字符串，由调用方负责转换。
    """
    env_value = os.getenv(env_key(key))
    if env_value is not None:
        return env_value
    node: Any = raw
    for part in key.split("."):
        if not isinstance(node, dict):
            return default
        node = node.get(part, _MISSING)
        if node is _MISSING:
            return default
    return default if node is None else node


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_list(value: Any) -> List[str]:
    # 环境变量里的列表用逗号分隔
    if isinstance(value, str):
        return [x.strip() for x in value.split(",") if x.strip()]
    return [str(x) for x in (value or [])]


def _package_version() -> str:
    try:
        return metadata.version("routetrace")
    except metadata.PackageNotFoundError:
        return "1.0.0"


DEFAULT_EXCLUDED_PATHS = ["/health", "/favicon", "/assets", "/css", "/js", "/img"]


@dataclass
class InstrumentationSettings:
    inbound_http_enabled: bool = True
    http_client_enabled: bool = True
    database_enabled: bool = True
    database_enable_commenter: bool = False


@dataclass
class OpenTelemetrySettings:
    """
    OpenTelemetry 相关原始配置。

    数值字段保持原样（可能是环境变量里的字符串），
    校验与类型转换统一交给 PipelineConfig.from_settings，
    这样坏配置只会在组装 pipeline 时以 ConfigurationError 失败。
    """
    service_name: str = "MyApp"
    service_version: str = "1.0.0"
    sampling_ratio: Any = 1.0
    exporter_host: str = "localhost"
    exporter_port: Any = 6831
    console_export: bool = False
    source_name_prefix: str = "MyApp"
    excluded_paths: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_PATHS))
    instrumentation: InstrumentationSettings = field(default_factory=InstrumentationSettings)


@dataclass
class ApiSettings:
    host: str = "127.0.0.1"
    port: int = 8000


class Settings:
    def __init__(self, raw: Optional[Dict[str, Any]] = None):
        raw = load_raw_config() if raw is None else raw
        self.raw = raw
        self.env = os.getenv("ROUTETRACE_ENV", "dev")

        service_name = str(get_value(raw, "OpenTelemetry.ServiceName", "MyApp"))
        self.open_telemetry = OpenTelemetrySettings(
            service_name=service_name,
            service_version=str(get_value(raw, "OpenTelemetry.ServiceVersion", _package_version())),
            sampling_ratio=get_value(raw, "OpenTelemetry.Sampling.Ratio", 1.0),
            exporter_host=str(get_value(raw, "OpenTelemetry.Exporters.Jaeger.AgentHost", "localhost")),
            exporter_port=get_value(raw, "OpenTelemetry.Exporters.Jaeger.AgentPort", 6831),
            console_export=_as_bool(get_value(raw, "OpenTelemetry.Exporters.Console.Enabled", False)),
            source_name_prefix=str(get_value(raw, "OpenTelemetry.SourceNamePrefix", service_name)),
            excluded_paths=_as_list(get_value(raw, "OpenTelemetry.ExcludedPaths", DEFAULT_EXCLUDED_PATHS)),
            instrumentation=InstrumentationSettings(
                inbound_http_enabled=_as_bool(
                    get_value(raw, "OpenTelemetry.Instrumentation.InboundHttp.Enabled", True)
                ),
                http_client_enabled=_as_bool(
                    get_value(raw, "OpenTelemetry.Instrumentation.HttpClient.Enabled", True)
                ),
                database_enabled=_as_bool(
                    get_value(raw, "OpenTelemetry.Instrumentation.Database.Enabled", True)
                ),
                database_enable_commenter=_as_bool(
                    get_value(raw, "OpenTelemetry.Instrumentation.Database.EnableCommenter", False)
                ),
            ),
        )
        self.logging: Dict[str, Any] = dict(raw.get("logging") or {})
        a = raw.get("api") or {}
        self.api = ApiSettings(
            host=str(a.get("host", os.getenv("API_HOST", "127.0.0.1"))),
            port=int(a.get("port", os.getenv("API_PORT", "8000"))),
        )

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"


# 全局单例
settings = Settings()
