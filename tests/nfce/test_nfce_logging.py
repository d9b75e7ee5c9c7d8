"""Tests for fiscal-identifier redaction in the JSON log formatter."""

import json
import logging

import pytest

from backend.core.config import settings
from backend.core.observability import set_seller_id, set_trace_id
from backend.core.observability.logging import JSONFormatter, hash_actor_token

ACCESS_KEY = "35261012345678000199650010000000071123456780"


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test", level=logging.INFO, pathname="", lineno=0, msg=msg, args=(), exc_info=None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFiscalRedaction:
    """Access keys, tax ids and e-mail addresses never reach the log verbatim."""

    @pytest.fixture
    def formatter(self):
        return JSONFormatter()

    def test_access_key_keeps_prefix_and_suffix(self, formatter):
        log_data = json.loads(formatter.format(_record(f"authorized {ACCESS_KEY}")))

        assert ACCESS_KEY not in log_data["msg"]
        assert "352610" + "*" * 34 + "6780" in log_data["msg"]

    def test_tax_id_shows_first_four_digits(self, formatter):
        log_data = json.loads(formatter.format(_record("seller 12345678000199 registered")))

        assert "12345678000199" not in log_data["msg"]
        assert "1234**********" in log_data["msg"]

    def test_email_redaction(self, formatter):
        log_data = json.loads(formatter.format(_record("contact john.doe@example.com")))

        assert "j*******@example.com" in log_data["msg"]

    def test_extra_fields_are_redacted(self, formatter):
        log_data = json.loads(
            formatter.format(_record("nfce_submitted", tax_id="12345678000199", access_key=ACCESS_KEY, ordinal=7))
        )

        assert log_data["tax_id"] == "1234**********"
        assert log_data["access_key"].startswith("352610***")
        assert log_data["ordinal"] == 7

    def test_mandatory_fields_and_context(self, formatter):
        set_trace_id("trace-abc")
        set_seller_id("12345678000199")
        try:
            log_data = json.loads(formatter.format(_record("numbering_allocated")))
        finally:
            set_trace_id("unknown")
            set_seller_id(None)

        assert log_data["trace_id"] == "trace-abc"
        assert log_data["seller_id"] == "1234**********"
        assert log_data["level"] == "info"
        assert log_data["ts_utc"].endswith("Z")

    def test_short_numbers_are_preserved(self, formatter):
        log_data = json.loads(formatter.format(_record("ordinal 1234567 series 1")))

        assert log_data["msg"] == "ordinal 1234567 series 1"


def test_actor_token_hash_is_stable_and_opaque():
    first = hash_actor_token("admin-token")

    assert first == hash_actor_token("admin-token")
    assert first != hash_actor_token("other-token")
    assert "admin-token" not in first
    assert len(first) == 64


def test_actor_token_hash_is_keyed_by_audit_setting(monkeypatch):
    before = hash_actor_token("admin-token")

    monkeypatch.setattr(settings, "AUDIT_HMAC_KEY", "rotated-audit-key")

    assert hash_actor_token("admin-token") != before
