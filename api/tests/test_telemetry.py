import logging

import pytest

from tutormatch.core.config import Settings
from tutormatch.core.telemetry import _build_exporter, _parse_headers, configure_api_logging


def test_parse_headers_skips_malformed_items() -> None:
    parsed = _parse_headers("authorization=Bearer abc, x-team = matching ,broken,=empty-key")

    assert parsed == {"authorization": "Bearer abc", "x-team": "matching"}
    assert _parse_headers(None) == {}


def test_build_exporter_stays_local_without_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

    assert _build_exporter(Settings(otel_exporter_otlp_endpoint=None)) is None


def test_log_records_carry_trace_fields() -> None:
    configure_api_logging(log_correlation=True)

    record = logging.getLogRecordFactory()("tutormatch.test", logging.INFO, __file__, 1, "hello", None, None)

    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16
