"""
日志管理模块：分级日志、控制台 + 可选按运行实例命名的文件，日志行带 trace 关联信息。
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from opentelemetry import trace

DEFAULT_LEVEL = "INFO"
DEFAULT_CONSOLE_OUTPUT = True
DEFAULT_FILE_OUTPUT = False
LOG_DIR_NAME = "app"

_NO_TRACE = "0"


class TraceContextFilter(logging.Filter):
    """给每条日志记录补上当前 span 的 trace_id / span_id（未采样时为 "0"）。"""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = trace.get_current_span().get_span_context()
        if ctx.is_valid and ctx.trace_flags.sampled:
            record.trace_id = format(ctx.trace_id, "032x")
            record.span_id = format(ctx.span_id, "016x")
        else:
            record.trace_id = _NO_TRACE
            record.span_id = _NO_TRACE
        return True


class LogManager:
    """
    统一日志管理：分级（DEBUG/INFO/WARNING/ERROR）、控制台输出，
    可选写入按启动时间命名的文件，所有 handler 都挂 TraceContextFilter。
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        base = Path(__file__).resolve().parent.parent.parent
        self.log_dir = Path(config["log_dir"]) if config.get("log_dir") else base / "logs" / LOG_DIR_NAME

        self.console_output = config.get("console_output", DEFAULT_CONSOLE_OUTPUT)
        self.file_output = config.get("file_output", DEFAULT_FILE_OUTPUT)
        level_name = (config.get("level") or DEFAULT_LEVEL).upper()
        self.level = getattr(logging, level_name, logging.INFO)

        self._run_log_path: Path | None = None
        self._trace_filter = TraceContextFilter()
        self._formatter = logging.Formatter(
            "%(asctime)s.%(msecs)03d | %(levelname)s | %(name)s | trace=%(trace_id)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def _run_file(self) -> Path:
        """当前运行的日志文件路径（按启动时间命名，进程内复用）."""
        if self._run_log_path is None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._run_log_path = self.log_dir / datetime.now().strftime("%Y-%m-%d_%H-%M-%S.log")
        return self._run_log_path

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler) -> None:
        handler.setLevel(self.level)
        handler.setFormatter(self._formatter)
        handler.addFilter(self._trace_filter)
        logger.addHandler(handler)

    def get_logger(self, name: str) -> logging.Logger:
        """获取具名 logger，按配置绑定控制台与运行日志文件."""
        logger = logging.getLogger(name)
        if logger.handlers:
            return logger

        logger.setLevel(self.level)
        logger.propagate = False

        if self.console_output:
            self._add_handler(logger, logging.StreamHandler())
        if self.file_output:
            self._add_handler(logger, logging.FileHandler(self._run_file(), encoding="utf-8"))
        return logger


_manager: LogManager | None = None


def init_logging(config: dict[str, Any] | None = None) -> LogManager:
    """初始化日志. 未传 config 时读取配置文件的 logging 段."""
    if config is None:
        from config.settings import settings
        config = settings.logging
    global _manager
    _manager = LogManager(config)
    return _manager


def get_logger(name: str, config: dict[str, Any] | None = None) -> logging.Logger:
    """获取 logger。若尚未初始化则用 config 或配置文件的 logging 段初始化."""
    if _manager is None:
        init_logging(config=config)
    return _manager.get_logger(name)
