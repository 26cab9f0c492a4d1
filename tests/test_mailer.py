"""
tests/test_mailer.py -- Unit tests for mail/smtp.py with smtplib.SMTP patched.

Covers:
  - precondition errors: InvalidConfig, InvalidFrom, NoRecipients,
    InvalidRecipient, InvalidSubject -- none of them opens a connection
  - the message is From/To/Subject, blank line, CRLF body
  - STARTTLS when offered, AUTH PLAIN, envelope addresses are bare
  - PLAIN is refused over plaintext to a remote host, allowed to localhost
  - SMTP and socket errors become SendFailed
  - the password never appears in repr/str/JSON of SMTPConfig
"""

from __future__ import annotations

import smtplib
from unittest.mock import patch

import pytest

from mail.errors import (
    InvalidConfig,
    InvalidFrom,
    InvalidRecipient,
    InvalidSubject,
    NoRecipients,
    SendFailed,
)
from mail.smtp import Mailer, SMTPConfig, address_of, build_message


def _config(**overrides) -> SMTPConfig:
    values = {"host": "smtp.example.com", "port": 587, "username": "mailer", "password": "hunter2"}
    values.update(overrides)
    return SMTPConfig(**values)


@pytest.fixture
def smtp_mock():
    """Yield the object bound by `with smtplib.SMTP(...) as smtp`."""
    with patch("mail.smtp.smtplib.SMTP") as smtp_cls:
        conn = smtp_cls.return_value.__enter__.return_value
        conn.has_extn.return_value = True
        yield smtp_cls, conn


class TestConfig:
    def test_complete_config_is_valid(self) -> None:
        assert _config().is_valid()

    @pytest.mark.parametrize("field, value", [("host", ""), ("port", 0), ("username", ""), ("password", "")])
    def test_missing_field_is_invalid(self, field: str, value) -> None:
        assert not _config(**{field: value}).is_valid()

    def test_password_is_redacted(self) -> None:
        cfg = _config()
        assert "hunter2" not in repr(cfg)
        assert "hunter2" not in str(cfg)
        assert "hunter2" not in cfg.model_dump_json()


class TestAddresses:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("alice@example.com", "alice@example.com"),
            ("Alice A <alice@example.com>", "alice@example.com"),
            ("not an address", None),
            ("", None),
            ("alice@example.com\r\nBcc: x@example.com", None),
        ],
    )
    def test_address_of(self, value: str, expected) -> None:
        assert address_of(value) == expected

    def test_build_message_layout(self) -> None:
        msg = build_message("a@example.com", ["b@example.com", "c@example.com"], "Hi", "line1\nline2")
        assert msg == (
            "From: a@example.com\r\n"
            "To: b@example.com, c@example.com\r\n"
            "Subject: Hi\r\n"
            "\r\n"
            "line1\r\nline2"
        )


class TestPreconditions:
    def test_invalid_config(self, smtp_mock) -> None:
        smtp_cls, _ = smtp_mock
        with pytest.raises(InvalidConfig):
            Mailer(_config(host="")).send_message("a@example.com", ["b@example.com"], "s", "b")
        smtp_cls.assert_not_called()

    def test_invalid_from(self, smtp_mock) -> None:
        smtp_cls, _ = smtp_mock
        with pytest.raises(InvalidFrom):
            Mailer(_config()).send_message("nope", ["b@example.com"], "s", "b")
        smtp_cls.assert_not_called()

    def test_no_recipients(self, smtp_mock) -> None:
        with pytest.raises(NoRecipients):
            Mailer(_config()).send_message("a@example.com", [], "s", "b")

    def test_invalid_recipient(self, smtp_mock) -> None:
        with pytest.raises(InvalidRecipient):
            Mailer(_config()).send_message("a@example.com", ["b@example.com", "bad"], "s", "b")

    def test_subject_with_newline(self, smtp_mock) -> None:
        with pytest.raises(InvalidSubject):
            Mailer(_config()).send_message("a@example.com", ["b@example.com"], "s\r\nBcc: x", "b")


class TestSend:
    def test_starttls_plain_auth_and_sendmail(self, smtp_mock) -> None:
        smtp_cls, conn = smtp_mock
        Mailer(_config()).send_message("WebAuth <a@example.com>", ["b@example.com"], "Subject", "Body")

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=10.0)
        conn.starttls.assert_called_once()
        conn.auth.assert_called_once_with("PLAIN", conn.auth_plain)
        assert conn.user == "mailer"
        assert conn.password == "hunter2"
        envelope_from, envelope_to, payload = conn.sendmail.call_args.args
        assert envelope_from == "a@example.com"
        assert envelope_to == ["b@example.com"]
        assert payload.startswith(b"From: WebAuth <a@example.com>\r\nTo: b@example.com\r\nSubject: Subject\r\n\r\n")
        assert payload.endswith(b"Body")

    def test_plain_auth_refused_without_tls_to_remote_host(self, smtp_mock) -> None:
        _, conn = smtp_mock
        conn.has_extn.return_value = False
        with pytest.raises(SendFailed):
            Mailer(_config()).send_message("a@example.com", ["b@example.com"], "s", "b")
        conn.auth.assert_not_called()
        conn.sendmail.assert_not_called()

    def test_plain_auth_allowed_without_tls_to_localhost(self, smtp_mock) -> None:
        _, conn = smtp_mock
        conn.has_extn.return_value = False
        Mailer(_config(host="localhost")).send_message("a@example.com", ["b@example.com"], "s", "b")
        conn.starttls.assert_not_called()
        conn.sendmail.assert_called_once()

    def test_smtp_error_becomes_send_failed(self, smtp_mock) -> None:
        _, conn = smtp_mock
        conn.sendmail.side_effect = smtplib.SMTPRecipientsRefused({"b@example.com": (550, b"no")})
        with pytest.raises(SendFailed):
            Mailer(_config()).send_message("a@example.com", ["b@example.com"], "s", "b")

    def test_connection_error_becomes_send_failed(self, smtp_mock) -> None:
        smtp_cls, _ = smtp_mock
        smtp_cls.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(SendFailed):
            Mailer(_config()).send_message("a@example.com", ["b@example.com"], "s", "b")
