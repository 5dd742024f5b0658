from __future__ import annotations

import logging

from athlete_social.core import telemetry
from athlete_social.core.config import Settings, get_settings


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("AS_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("AS_MEDIA_BUCKETS", "avatars, post-media ,")
    monkeypatch.setenv("AS_HANDLE_MAX_LENGTH", "24")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.storage_backend == "memory"
        assert settings.get_media_buckets() == {"avatars", "post-media"}
        assert settings.handle_max_length == 24
    finally:
        get_settings.cache_clear()


def test_default_media_limits() -> None:
    settings = Settings()

    assert settings.media_max_bytes == 5 * 1024 * 1024
    assert "image/png" in settings.get_media_allowed_content_types()
    assert "application/pdf" not in settings.get_media_allowed_content_types()


def test_parse_otlp_headers() -> None:
    assert telemetry._parse_headers("authorization=Bearer abc, x-team = social,broken") == {
        "authorization": "Bearer abc",
        "x-team": "social",
    }
    assert telemetry._parse_headers(None) == {}


def test_setup_telemetry_disabled_is_noop() -> None:
    runtime = telemetry.setup_telemetry(Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.httpx_instrumented is False
    telemetry.shutdown_telemetry(runtime)


def test_log_records_carry_trace_and_requester_fields() -> None:
    telemetry.configure_logging()
    factory = logging.getLogRecordFactory()

    outside = factory("athlete_social", logging.INFO, __file__, 1, "hello", (), None)
    with telemetry.requester_context("11111111-1111-4111-8111-111111111111"):
        inside = factory("athlete_social", logging.INFO, __file__, 1, "hello", (), None)

    assert outside.trace_id == "-"
    assert outside.span_id == "-"
    assert outside.requester_id == "-"
    assert inside.requester_id == "11111111-1111-4111-8111-111111111111"


def test_storage_span_runs_without_a_configured_provider() -> None:
    with telemetry.requester_context("requester-1"):
        with telemetry.storage_span("counters.reconcile", post_id=None, field="likes_count") as span:
            assert span is not None
