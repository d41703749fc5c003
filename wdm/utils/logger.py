"""wdm 日志配置

支持普通文本和结构化 JSON 两种输出格式。并行流水线的日志通过
DependencyLogAdapter 带上依赖名，文本格式显示为前缀，JSON 格式为 dependency 字段。
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping


class JSONFormatter(logging.Formatter):
    """结构化 JSON 日志格式器，便于 CI 流水线消费

    输出格式:
        {
            "timestamp": "2024-01-01T12:00:00+00:00",
            "level": "INFO",
            "logger": "wdm.core.reconcile",
            "message": "log message",
            "dependency": "foo" (仅依赖流水线日志),
            "exception": "traceback..." (仅在有异常时)
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            # 使用 record.created，记录事件发生时间而非格式化时间
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        dependency = getattr(record, "dependency", None)
        if dependency:
            log_entry["dependency"] = dependency
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


class DependencyLogAdapter(logging.LoggerAdapter):
    """为单个依赖流水线的日志附加依赖名"""

    def __init__(self, logger: logging.Logger, dependency: str) -> None:
        super().__init__(logger, {"dependency": dependency})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("dependency", self.extra["dependency"])
        kwargs["extra"] = extra
        return f"[{self.extra['dependency']}] {msg}", kwargs


def dependency_logger(logger: logging.Logger, dependency: str) -> DependencyLogAdapter:
    return DependencyLogAdapter(logger, dependency)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """配置根日志器

    参数:
        level: 日志级别字符串（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        json_output: 为 True 时使用 JSON 格式（适用于 CI），否则使用人类可读格式

    说明:
        - 输出到 stderr，stdout 留给命令的逐依赖结果行
        - 自动清理已有 handlers，避免重复输出
    """
    root = logging.getLogger()
    reset_logging()

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        fmt = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"
        handler.setFormatter(logging.Formatter(fmt))

    root.addHandler(handler)


def reset_logging() -> None:
    """清理根日志器上所有已注册的 handlers"""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
