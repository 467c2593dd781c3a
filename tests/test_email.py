import smtplib

from courseauth.service.email import EmailService, EmailTemplate


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError("SMTP must not be used in dev mode")

    monkeypatch.setattr(smtplib, "SMTP", _fail)
    service = EmailService()
    assert service.is_configured is False
    assert service.send(
        "ada@example.com", "Ada Lovelace", EmailTemplate.ACTIVATE_ACCOUNT, "123456", "Account Activation"
    ) is True


def test_confirmation_link_is_rendered_and_escaped():
    service = EmailService(from_name="Course Platform")
    link = "http://localhost/confirm?token=abc&x=<y>"
    html_body, text_body = service.render(EmailTemplate.CONFIRM_EMAIL, "Ada", link)

    assert "http://localhost/confirm?token=abc&amp;x=&lt;y&gt;" in html_body
    assert "<y>" not in html_body
    assert link in text_body
    assert "Hello Ada" in text_body


def test_activation_code_template_includes_code_and_url():
    service = EmailService(activation_url="https://courses.example.com/activate")
    html_body, text_body = service.render("activate_account", "", "654321")

    assert "654321" in html_body
    assert "https://courses.example.com/activate" in html_body
    assert "Your activation code is 654321" in text_body
    assert "Hello there" in text_body


def test_smtp_failure_returns_false(monkeypatch):
    class RefusingSMTP:
        def __init__(self, *args, **kwargs):
            raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    assert service.send(
        "ada@example.com", "Ada", EmailTemplate.CONFIRM_EMAIL, "http://x", "Confirm your email"
    ) is False


def test_smtp_auth_failure_returns_false(monkeypatch):
    class RejectingSMTP:
        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            pass

        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(smtplib, "SMTP", RejectingSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    assert service.send(
        "ada@example.com", "Ada", EmailTemplate.ACTIVATE_ACCOUNT, "123456", "Account Activation"
    ) is False


def test_successful_delivery(monkeypatch):
    sent = []

    class RecordingSMTP:
        def __init__(self, host, port, timeout=None):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            pass

        def login(self, user, password):
            pass

        def sendmail(self, from_addr, to_addr, message):
            sent.append((from_addr, to_addr, message))

    monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    assert service.send(
        "ada@example.com", "Ada", EmailTemplate.ACTIVATE_ACCOUNT, "123456", "Account Activation"
    ) is True
    ((from_addr, to_addr, message),) = sent
    assert from_addr == "noreply@example.com"
    assert to_addr == "ada@example.com"
    assert "Subject: Account Activation" in message


def test_redact_email():
    service = EmailService()
    assert service._redact_email("ada.lovelace@example.com") == "ad***@example.com"
    assert service._redact_email("not-an-address") == "redacted"
