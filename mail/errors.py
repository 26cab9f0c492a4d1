"""
mail/errors.py -- Failures raised by Mailer.send_message().

InvalidConfig is a programmer/deployment error (missing SMTP settings); the
rest describe bad input or a failed delivery.
"""

from __future__ import annotations


class MailError(Exception):
    pass


class InvalidConfig(MailError):
    """Host, port, username or password is missing."""


class InvalidFrom(MailError):
    pass


class NoRecipients(MailError):
    pass


class InvalidRecipient(MailError):
    pass


class InvalidSubject(MailError):
    """The subject contains a line break and would inject headers."""


class SendFailed(MailError):
    """The SMTP conversation failed; the cause is chained."""
