from __future__ import annotations

import json
import logging

from storefront.app.core.config import Settings
from storefront.app.core.logging import JsonFormatter


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("QUANTITY_DEBOUNCE_MS", "250")
    monkeypatch.setenv("CART_SOURCE_BACKEND", "memory")
    s = Settings()
    assert s.debounce_seconds == 0.25
    assert s.cart_source_backend == "memory"
    assert s.currency == "DZD"


def test_json_formatter_carries_cart_fields():
    record = logging.LogRecord("storefront.test", logging.INFO, __file__, 1, "commit %s", ("ok",), None)
    record.cart_key = "guest:g-1"
    doc = json.loads(JsonFormatter().format(record))
    assert doc["msg"] == "commit ok"
    assert doc["cart_key"] == "guest:g-1"
    assert "product_id" not in doc
