"""
mail/smtp.py -- Plain-text email over SMTP with a minimal header block.

Message format:
    From: <from>\\r\\n
    To: <recipient>, <recipient>\\r\\n
    Subject: <subject>\\r\\n
    \\r\\n
    <body with CRLF line endings>

Transport: smtplib.SMTP to host:port, EHLO, STARTTLS when the server offers
it, then AUTH PLAIN. PLAIN sends the password in the clear, so it is refused
on an unencrypted link unless the server is on localhost.

Address checks: email.utils.parseaddr splits an optional display name off,
then email-validator checks the address syntax (no DNS lookups).

The SMTP password is a pydantic SecretStr, so repr(), str() and JSON dumps
of SMTPConfig show it masked.

Layer rule: no imports from api/, web/, auth/, or sse/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.utils import parseaddr

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, SecretStr

from mail.errors import (
    InvalidConfig,
    InvalidFrom,
    InvalidRecipient,
    InvalidSubject,
    NoRecipients,
    SendFailed,
)

logger = logging.getLogger("webauth.mail")

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SMTPConfig(BaseModel):
    host: str = ""
    port: int = 0
    username: str = ""
    password: SecretStr = SecretStr("")
    timeout: float = 10.0

    def is_valid(self) -> bool:
        """True when every setting needed to authenticate is present."""
        return bool(self.host and self.port > 0 and self.username and self.password.get_secret_value())


def address_of(value: str) -> str | None:
    """Return the bare address from "Name <addr>" or "addr", or None if invalid."""
    if not value or "\r" in value or "\n" in value:
        return None
    _name, addr = parseaddr(value)
    if not addr:
        return None
    try:
        validate_email(addr, check_deliverability=False)
    except EmailNotValidError:
        return None
    return addr


def build_message(from_addr: str, recipients: list[str], subject: str, body: str) -> str:
    body = body.replace("\r\n", "\n").replace("\n", "\r\n")
    return f"From: {from_addr}\r\nTo: {', '.join(recipients)}\r\nSubject: {subject}\r\n\r\n{body}"


class Mailer:
    """Sends one message per call; no connection is kept between sends."""

    def __init__(self, config: SMTPConfig) -> None:
        self.config = config

    def send_message(self, from_addr: str, recipients: list[str], subject: str, body: str) -> None:
        if not self.config.is_valid():
            raise InvalidConfig("SMTP host, port, username and password are required")
        envelope_from = address_of(from_addr)
        if envelope_from is None:
            raise InvalidFrom(repr(from_addr))
        if not recipients:
            raise NoRecipients()
        envelope_to = []
        for recipient in recipients:
            addr = address_of(recipient)
            if addr is None:
                raise InvalidRecipient(repr(recipient))
            envelope_to.append(addr)
        if "\r" in subject or "\n" in subject:
            raise InvalidSubject(repr(subject))

        message = build_message(from_addr, recipients, subject, body)
        cfg = self.config
        try:
            with smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout) as smtp:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.ehlo()
                elif cfg.host not in _LOCAL_HOSTS:
                    raise SendFailed("refusing PLAIN authentication over an unencrypted connection")
                smtp.user, smtp.password = cfg.username, cfg.password.get_secret_value()
                smtp.auth("PLAIN", smtp.auth_plain)
                smtp.sendmail(envelope_from, envelope_to, message.encode("utf-8"))
        except (smtplib.SMTPException, OSError) as exc:
            raise SendFailed(str(exc)) from exc
        logger.info("Sent %r to %d recipient(s)", subject, len(envelope_to))
