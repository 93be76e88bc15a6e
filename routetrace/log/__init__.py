"""统一日志管理：分级、控制台/文件输出、trace 关联。"""
from .log_manager import (
    LogManager,
    TraceContextFilter,
    get_logger,
    init_logging,
)

__all__ = ["LogManager", "TraceContextFilter", "get_logger", "init_logging"]
