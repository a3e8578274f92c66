"""Email delivery for validation codes.

Two senders are provided:

- ``OutboxEmailSender`` writes each message as a JSON file under the data
  directory. Useful for local development, where a human reads the code
  from disk instead of an inbox.
- ``ResendEmailSender`` posts messages to the Resend HTTP API.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

import httpx
import portalocker

from .config import ServerConfig
from .errors import EmailDispatchFailure
from .locking import atomic_write_text, file_lock
from .models import utc_now

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class EmailMessage:
    """An outbound email."""
    to: str
    subject: str
    html: str
    text: str


class EmailSender(Protocol):
    """Anything that can deliver an EmailMessage."""

    async def send(self, message: EmailMessage) -> None:
        ...


class OutboxEmailSender:
    """Writes messages to ``<outbox>/<timestamp>-<id>.json``.

    Writers share one lock on ``<outbox>.lock``.
    """

    def __init__(self, outbox_dir: Path, sender: str, lock_timeout: float = 10.0):
        self.outbox_dir = outbox_dir
        self.sender = sender
        self.lock_timeout = lock_timeout

    async def send(self, message: EmailMessage) -> None:
        timestamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        path = self.outbox_dir / f"{timestamp}-{uuid.uuid4().hex[:8]}.json"
        payload = {"from": self.sender, **asdict(message)}
        try:
            with file_lock(self.outbox_dir, timeout=self.lock_timeout):
                atomic_write_text(path, json.dumps(payload, indent=2))
        except (OSError, portalocker.LockException) as e:
            raise EmailDispatchFailure(f"Could not write email to outbox: {e}") from e
        logger.info("Queued email to %s in %s", message.to, path)


class ResendEmailSender:
    """Sends messages through the Resend API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self._client = client
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def send(self, message: EmailMessage) -> None:
        try:
            response = await self.client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.sender,
                    "to": [message.to],
                    "subject": message.subject,
                    "html": message.html,
                    "text": message.text,
                },
            )
        except httpx.HTTPError as e:
            raise EmailDispatchFailure(f"Email request failed: {e}") from e

        if response.status_code >= 400:
            raise EmailDispatchFailure(
                f"Email provider rejected message ({response.status_code}): {response.text}"
            )
        logger.info("Sent email to %s via Resend", message.to)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def make_email_sender(config: ServerConfig) -> EmailSender:
    """Build the sender selected by ``config.email_backend``."""
    if config.email_backend == "resend":
        if not config.resend_api_key:
            raise ValueError("RESEND_API_KEY is required for the resend email backend")
        return ResendEmailSender(config.resend_api_key, config.email_from)
    return OutboxEmailSender(config.get_outbox_path(), config.email_from)
