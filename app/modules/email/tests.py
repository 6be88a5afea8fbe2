import smtplib
from unittest.mock import patch

import pytest

from app.modules.email.service import EmailService
from app.modules.email.tasks import (
    EmailDeliveryError, send_verification_email_task, send_password_reset_email_task
)


@pytest.fixture
def service():
    return EmailService()


class TestTemplates:

    def test_verification_template(self, service):
        html = service.render_template("verification_email.html", {
            "user_name": "Ana",
            "verification_url": "http://testserver/verify-email?token=abc",
            "support_email": "support@example.com",
        })
        assert "Ana" in html
        assert "http://testserver/verify-email?token=abc" in html

    def test_autoescape(self, service):
        html = service.render_template("password_reset_email.html", {
            "user_name": "<script>",
            "reset_url": "http://testserver/reset-password?token=abc",
            "support_email": "support@example.com",
        })
        assert "<script>" not in html
        assert "&lt;script&gt;" in html


class TestSendEmail:

    def test_smtp_failure_returns_false(self, service):
        with patch.object(service, "_create_smtp_connection", side_effect=smtplib.SMTPException("down")):
            assert service.send_email(["a@example.com"], "Hi", text_content="hello") is False

    def test_sends_message(self, service):
        with patch.object(service, "_create_smtp_connection") as connection:
            assert service.send_email(["a@example.com", "b@example.com"], "Hi", html_content="<p>hi</p>")
        server = connection.return_value.__enter__.return_value
        from_email, recipients, message = server.sendmail.call_args.args
        assert recipients == ["a@example.com", "b@example.com"]
        assert "Subject: Hi" in message


class TestEmailTasks:

    def test_verification_link(self):
        with patch("app.modules.email.tasks.email_service.send_template_email", return_value=True) as send:
            result = send_verification_email_task("ana@example.com", None, "tok123")
        assert result == {"status": "success", "email": "ana@example.com"}
        context = send.call_args.kwargs["context"]
        assert context["user_name"] == "ana@example.com"
        assert context["verification_url"].endswith("/verify-email?token=tok123")

    def test_reset_failure_raises_for_retry(self):
        with patch("app.modules.email.tasks.email_service.send_template_email", return_value=False):
            with pytest.raises(EmailDeliveryError):
                send_password_reset_email_task("ana@example.com", "Ana", "tok123")
