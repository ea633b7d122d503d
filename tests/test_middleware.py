"""
Tests — logging formatters and request timing middleware.
"""

import json
import logging

from buildtrack.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(**extra):
    record = logging.LogRecord("buildtrack.ops", logging.ERROR, __file__, 10,
                               "Alert sweep failed for project %s", (7,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter_copies_workflow_context(self):
        payload = json.loads(JSONFormatter().format(
            _record(project_id=7, rule_key="ON_HOLD", event_type="alert_sweep_project_failed")))
        assert payload["message"] == "Alert sweep failed for project 7"
        assert payload["logger"] == "buildtrack.ops"
        assert payload["project_id"] == 7
        assert payload["rule_key"] == "ON_HOLD"
        assert payload["event_type"] == "alert_sweep_project_failed"
        assert "alert_id" not in payload

    def test_readable_formatter_shows_project_scope(self):
        line = ReadableFormatter().format(_record(project_id=7))
        assert "[project=7]" in line
        assert "Alert sweep failed for project 7" in line

    def test_ops_logger_level_at_least_warning(self, app):
        assert logging.getLogger("buildtrack.ops").getEffectiveLevel() <= logging.WARNING


class TestRequestTiming:
    def test_headers_present(self, client):
        res = client.get("/api/v1/health")
        assert "X-Request-Duration-Ms" in res.headers
        assert res.headers["X-Request-ID"]

    def test_request_id_propagated(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
