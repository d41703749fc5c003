"""日志配置测试"""

from __future__ import annotations

import io
import json
import logging

from wdm.utils.logger import JSONFormatter, dependency_logger, reset_logging, setup_logging


class TestLogging:
    def test_json_formatter_carries_dependency(self) -> None:
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter())
        log = logging.getLogger("wdm.test.json")
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        log.propagate = False
        try:
            dependency_logger(log, "foo").info("已安装 %s", "1.2.0")
        finally:
            log.removeHandler(handler)

        entry = json.loads(stream.getvalue())
        assert entry["dependency"] == "foo"
        assert entry["message"] == "[foo] 已安装 1.2.0"
        assert entry["level"] == "INFO"

    def test_setup_logging_replaces_handlers(self) -> None:
        setup_logging("DEBUG")
        setup_logging("WARNING", json_output=True)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.WARNING
        reset_logging()
        assert root.handlers == []
