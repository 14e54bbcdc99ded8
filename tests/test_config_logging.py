import logging

from ticketflow.core.config import Settings
from ticketflow.core.logging import EnvironmentFilter, _parse_headers, configure_logging, init_tracer


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("TICKET_STORE_BACKEND", "memory")
    monkeypatch.setenv("ENGINE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CALLBACK_TOKEN", "s3cret")

    settings = Settings()

    assert settings.ticket_store_backend == "memory"
    assert settings.engine_max_attempts == 5
    assert settings.callback_token == "s3cret"
    assert settings.engine_process_key == "ticket_approval"


def test_parse_headers_skips_malformed_pairs():
    assert _parse_headers("authorization=Bearer abc, broken, x-team = ops") == {
        "authorization": "Bearer abc",
        "x-team": "ops",
    }
    assert _parse_headers(None) == {}


def test_configure_logging_quiets_noisy_libraries():
    logger = configure_logging(Settings(log_level="debug", environment="test"))

    assert logger.name == "ticketflow"
    assert logger.level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


def test_environment_filter_tags_records():
    record = logging.LogRecord("ticketflow", logging.INFO, __file__, 1, "msg", None, None)

    assert EnvironmentFilter("staging").filter(record)
    assert record.environment == "staging"


def test_tracer_is_not_installed_when_disabled():
    assert init_tracer(Settings(otel_enabled=False)) is None
