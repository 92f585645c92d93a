from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx

from .config import Settings
from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str


# ----------------------------
# Mailer interface
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None:
        """Deliver one plain-text message. Raise on delivery failure."""

    async def aclose(self) -> None:
        pass


class LogMailer(Mailer):
    """Development transport: writes the message to the log."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("mail to=%s subject=%r\n%s", to, subject, body)


class MemoryMailer(Mailer):
    def __init__(self) -> None:
        self.outbox: List[Message] = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.outbox.append(Message(to, subject, body))


class HttpMailer(Mailer):
    """Hands messages to an HTTP mail relay as JSON."""

    def __init__(self, relay_url: str, sender: str,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 5.0) -> None:
        self.relay_url = relay_url
        self.sender = sender
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, to: str, subject: str, body: str) -> None:
        r = await self.client.post(self.relay_url, json={
            "from": self.sender,
            "to": to,
            "subject": subject,
            "text": body,
        })
        r.raise_for_status()

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()


def new_mailer(settings: Settings) -> Mailer:
    if settings.mail_transport == "http":
        if not settings.mail_relay_url:
            raise ConfigError("MAIL_TRANSPORT=http requires MAIL_RELAY_URL")
        return HttpMailer(settings.mail_relay_url, settings.mail_from)
    if settings.mail_transport == "memory":
        return MemoryMailer()
    return LogMailer()
