from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI
from structlog.contextvars import get_contextvars

from catcache.common import observability


def test_configure_logging_emits_json(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_logging_configured", False)

    observability.configure_logging("catcache.test", "INFO")
    logger = structlog.get_logger("catcache.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("structured-event", key="418")

    payload = json.loads(caplog.records[-1].message)
    assert payload["message"] == "structured-event"
    assert payload["key"] == "418"
    assert payload["service"] == "catcache.test"


def test_log_level_parsing():
    assert observability._log_level("debug") == logging.DEBUG
    assert observability._log_level(logging.WARNING) == logging.WARNING
    assert observability._log_level("not-a-level") == logging.INFO
    assert observability._log_level(None) == logging.INFO


def test_bind_request_context_replaces_previous_request():
    observability.bind_request_context("PUT", "/500")
    observability.bind_request_context("GET", "/418")

    context = get_contextvars()
    assert context["method"] == "GET"
    assert context["path"] == "/418"
    assert context["service"] == observability.SERVICE_NAME


def test_parse_otlp_headers():
    headers = observability.parse_otlp_headers("authorization=Bearer token, custom=abc,,broken")
    assert headers == {"authorization": "Bearer token", "custom": "abc"}
    assert observability.parse_otlp_headers(None) == {}


def test_instrument_fastapi_app_adds_middleware(monkeypatch):
    monkeypatch.setattr(observability, "_tracer_configured", False)
    app = FastAPI()
    observability.configure_tracing("catcache.obs", None, None, 1.0)
    observability.instrument_fastapi_app(app)
    assert any(m.cls.__name__ == "OpenTelemetryMiddleware" for m in app.user_middleware)
