"""
Structured log formatting.
"""

import json
import logging

from src.shared.infrastructure.logging import CustomJsonFormatter


def format_record(**extra) -> dict:
    formatter = CustomJsonFormatter("%(name)s %(levelname)s %(message)s", environment="staging")
    record = logging.LogRecord("sla", logging.INFO, __file__, 1, "Escalation fired", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


def test_standard_fields():
    log = format_record(correlation_id="abc", escalation_level=2)

    assert log["message"] == "Escalation fired"
    assert log["environment"] == "staging"
    assert log["correlation_id"] == "abc"
    assert log["escalation_level"] == 2
    assert "timestamp" in log


def test_secrets_are_redacted():
    log = format_record(slack_webhook_url="https://hooks.slack.test/x", api_token="t0k")

    assert log["slack_webhook_url"] == "***REDACTED***"
    assert log["api_token"] == "***REDACTED***"
