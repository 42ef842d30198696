"""Outbound mail boundary.

Delivery is an external collaborator; the default sender only writes to the
application log so verification and reset flows can run end to end.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    body: str


class MailSender(Protocol):
    async def send(self, message: MailMessage) -> None: ...


class LoggingMailSender:
    """Logs messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: deque[MailMessage] = deque(maxlen=100)

    async def send(self, message: MailMessage) -> None:
        self.sent.append(message)
        logger.info(f"Mail to {message.to}: {message.subject}")


_mail_sender: MailSender = LoggingMailSender()


def get_mail_sender() -> MailSender:
    return _mail_sender


def set_mail_sender(sender: MailSender) -> None:
    global _mail_sender
    _mail_sender = sender
