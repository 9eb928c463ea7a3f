from __future__ import annotations

import json
import logging

from aha_digest.log import JsonFormatter, setup_logging


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("aha_digest.test", logging.INFO, __file__, 1, "window %s", ("done",), None)
    record.topic_id = 7

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "window done"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "aha_digest.test"
    assert payload["topic_id"] == 7


def test_setup_logging_adds_one_handler(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)

    setup_logging("debug")
    setup_logging("warning")

    json_handlers = [h for h in root.handlers if isinstance(h.formatter, JsonFormatter)]
    assert len(json_handlers) == 1
    assert root.level == logging.WARNING


def test_setup_logging_unknown_level_defaults_to_info(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)

    setup_logging("chatty")

    assert root.level == logging.INFO
