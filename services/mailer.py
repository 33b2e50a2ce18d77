"""HTTP mail relay client used for best-effort notification emails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger


@dataclass(slots=True)
class MailMessage:
    to: str
    subject: str
    body: str


class MailRelayClient:
    """Posts messages to an HTTP mail relay.

    When no relay URL is configured, delivery is disabled: messages are logged
    and dropped so notification records are still created.
    """

    def __init__(
        self,
        *,
        relay_url: Optional[str],
        sender: str,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._relay_url = relay_url
        self._sender = sender
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._warned_disabled = False

    @property
    def enabled(self) -> bool:
        return bool(self._relay_url)

    async def start(self) -> None:
        if not self.enabled:
            logger.warning("Mail relay not configured; email notifications are disabled")
            self._warned_disabled = True
            return
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
            self._client = httpx.AsyncClient(
                timeout=self._timeout_seconds,
                headers=headers,
                transport=self._transport,
            )
            logger.info("Mail relay client ready", relay=self._relay_url, sender=self._sender)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, message: MailMessage) -> bool:
        """Deliver one message; returns False when delivery is disabled.

        Transport and HTTP status errors propagate to the caller.
        """

        if not self.enabled:
            if not self._warned_disabled:
                logger.warning("Mail relay not configured; email notifications are disabled")
                self._warned_disabled = True
            logger.debug("Skipping email delivery", to=message.to, subject=message.subject)
            return False

        if self._client is None:
            await self.start()

        assert self._client is not None
        response = await self._client.post(
            self._relay_url,
            json={
                "from": self._sender,
                "to": message.to,
                "subject": message.subject,
                "text": message.body,
            },
        )
        response.raise_for_status()
        logger.debug("Email handed to relay", to=message.to, status=response.status_code)
        return True
