from __future__ import annotations

import logging

from account_service.config import Settings
from account_service.logging_config import RequestIdFilter, configure_logging, request_id_var


def test_configure_logging_is_idempotent():
    configure_logging(Settings(log_level="INFO"))
    configure_logging(Settings(log_level="WARNING"))
    root = logging.getLogger()
    named = [handler for handler in root.handlers if handler.get_name() == "account-service"]
    assert len(named) == 1
    assert root.level == logging.WARNING


def test_request_id_filter_stamps_records():
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)
    token = request_id_var.set("req-42")
    try:
        assert RequestIdFilter().filter(record)
    finally:
        request_id_var.reset(token)
    assert record.request_id == "req-42"
