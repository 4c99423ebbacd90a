"""Notifier tests."""

from unittest.mock import MagicMock, patch

import requests

from bulk_streamer.config import NotifierConfig
from bulk_streamer.models import JobStatus
from bulk_streamer.notifier import Notifier


class TestNotifier:
    def test_disabled_by_default(self):
        notifier = Notifier(NotifierConfig())
        assert not notifier.enabled
        with patch("bulk_streamer.notifier.requests.post") as post:
            notifier.notify_job("job1", JobStatus.FAILED, "boom")
        post.assert_not_called()

    def test_webhook_payload(self):
        notifier = Notifier(NotifierConfig(webhook_url="https://hooks.example/streams"))
        with patch("bulk_streamer.notifier.requests.post") as post:
            notifier.notify_job("job1", JobStatus.CIRCUIT_BREAKER, "API unreachable")

        url = post.call_args[0][0]
        payload = post.call_args[1]["json"]
        assert url == "https://hooks.example/streams"
        assert payload["subject"] == "Stream job job1 circuit_breaker"
        assert payload["event"] == {"job_id": "job1", "status": "circuit_breaker", "detail": "API unreachable"}

    def test_webhook_errors_are_logged(self, caplog):
        notifier = Notifier(NotifierConfig(webhook_url="https://hooks.example/streams"))
        with patch("bulk_streamer.notifier.requests.post", side_effect=requests.ConnectionError("down")):
            notifier.notify("subject", "message")

        assert "Failed to send webhook" in caplog.text

    def test_email(self):
        config = NotifierConfig(smtp_host="smtp.example", email_from="bot@example", email_to="ops@example")
        smtp = MagicMock()
        with patch("bulk_streamer.notifier.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = smtp
            Notifier(config).notify("subject", "message")

        smtp.starttls.assert_called_once()
        smtp.login.assert_not_called()
        assert smtp.send_message.call_args[0][0]["To"] == "ops@example"
