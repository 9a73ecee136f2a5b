"""
Send capabilities.

Each sender turns one ``OutboundMessage`` into a ``SendResult``. Transport failures are
reported as unsuccessful results, never raised: the dispatcher records them as failed
attempts and a later tick retries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import structlog

from carewatch.core.config import Settings
from carewatch.core.errors import ConfigError
from carewatch.shared.constants import Channel, RecipientKind
from carewatch.shared.schemas import new_id, utc_now

log = structlog.get_logger()


@dataclass(frozen=True)
class Recipient:
    name: str
    address: str | None = None


@dataclass(frozen=True)
class OutboundMessage:
    alert_id: str
    patient_id: str
    recipient_kind: RecipientKind
    recipients: list[Recipient]
    subject: str
    text: str
    template: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    # Names of recipients known not to have been reached. Empty on failure means none were.
    undelivered: tuple[str, ...] = ()


class Sender(Protocol):
    channel: Channel

    def accepts(self, recipient: Recipient) -> bool:
        """Whether this channel has a route to ``recipient``."""
        ...

    async def send(self, message: OutboundMessage) -> SendResult: ...


class LogSender:
    """Local development only: the message is logged and counted as sent."""

    channel = Channel.LOG

    def accepts(self, recipient: Recipient) -> bool:
        return True

    async def send(self, message: OutboundMessage) -> SendResult:
        log.warning(
            "notification.log_only",
            alert_id=message.alert_id,
            recipient_kind=message.recipient_kind.value,
            recipients=[recipient.name for recipient in message.recipients],
            subject=message.subject,
            preview=message.text[:100],
        )
        return SendResult(success=True, provider_message_id=f"log-{new_id()}")


class WebhookSender:
    """POST the message to an automation webhook (n8n, Zapier, a paging bridge...)."""

    channel = Channel.WEBHOOK

    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        self._url = url
        self._client = client

    def accepts(self, recipient: Recipient) -> bool:
        return recipient.address is not None

    async def send(self, message: OutboundMessage) -> SendResult:
        payload = {
            "recipients": [
                {"name": recipient.name, "address": recipient.address}
                for recipient in message.recipients
            ],
            "subject": message.subject,
            "message": message.text,
            "alert": {
                "alertId": message.alert_id,
                "patientId": message.patient_id,
                "recipientType": message.recipient_kind.value,
                "template": message.template,
                **message.metadata,
            },
            "timestamp": utc_now().isoformat(),
        }
        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            log.warning("notification.webhook_failed", alert_id=message.alert_id, error=str(exc))
            return SendResult(success=False, error=f"webhook transport error: {exc.__class__.__name__}")

        if response.is_error:
            log.warning(
                "notification.webhook_rejected",
                alert_id=message.alert_id,
                status_code=response.status_code,
            )
            return SendResult(success=False, error=f"webhook error: {response.status_code}")

        provider_id: str | None = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            raw_id = body.get("id") or body.get("messageId")
            provider_id = str(raw_id) if raw_id is not None else None
        return SendResult(success=True, provider_message_id=provider_id)


class TelegramSender:
    """Telegram Bot API. Recipients without a chat id fall back to the default chat."""

    channel = Channel.TELEGRAM
    API_BASE = "https://api.telegram.org"

    def __init__(self, bot_token: str, default_chat_id: str | None, client: httpx.AsyncClient) -> None:
        self._bot_token = bot_token
        self._default_chat_id = default_chat_id
        self._client = client

    def accepts(self, recipient: Recipient) -> bool:
        return bool(recipient.address or self._default_chat_id)

    async def send(self, message: OutboundMessage) -> SendResult:
        chats: dict[str, list[str]] = {}
        unroutable: list[str] = []
        for recipient in message.recipients:
            chat_id = recipient.address or self._default_chat_id
            if chat_id is None:
                unroutable.append(recipient.name)
            else:
                chats.setdefault(chat_id, []).append(recipient.name)
        if not chats:
            return SendResult(
                success=False, error="no telegram chat configured", undelivered=tuple(unroutable)
            )

        url = f"{self.API_BASE}/bot{self._bot_token}/sendMessage"
        delivered: list[str] = []
        undelivered: list[str] = list(unroutable)
        errors: list[str] = ["no telegram chat configured"] if unroutable else []
        for chat_id, names in sorted(chats.items()):
            try:
                response = await self._client.post(
                    url, json={"chat_id": chat_id, "text": f"{message.subject}\n\n{message.text}"}
                )
            except httpx.HTTPError as exc:
                errors.append(f"transport error: {exc.__class__.__name__}")
                undelivered.extend(names)
                continue
            if response.is_error:
                errors.append(f"telegram error: {response.status_code}")
                undelivered.extend(names)
                continue
            result = response.json().get("result") or {}
            delivered.append(str(result.get("message_id", "")))

        provider_id = ",".join(delivered) or None
        if undelivered:
            log.warning(
                "notification.telegram_failed",
                alert_id=message.alert_id,
                undelivered=undelivered,
                errors=errors,
            )
            return SendResult(
                success=False,
                provider_message_id=provider_id,
                error="; ".join(errors),
                undelivered=tuple(undelivered),
            )
        return SendResult(success=True, provider_message_id=provider_id)


def build_senders(config: Settings, client: httpx.AsyncClient) -> dict[Channel, Sender]:
    senders: dict[Channel, Sender] = {}
    if config.TELEGRAM_BOT_TOKEN:
        senders[Channel.TELEGRAM] = TelegramSender(
            config.TELEGRAM_BOT_TOKEN, config.TELEGRAM_CHAT_ID, client
        )
    if config.NOTIFY_WEBHOOK_URL:
        senders[Channel.WEBHOOK] = WebhookSender(config.NOTIFY_WEBHOOK_URL, client)
    if not senders:
        if config.ENVIRONMENT != "local":
            raise ConfigError(
                "no notification channel configured",
                environment=config.ENVIRONMENT,
                expected="NOTIFY_WEBHOOK_URL or TELEGRAM_BOT_TOKEN",
            )
        log.warning("notification.no_channel_configured", fallback=Channel.LOG.value)
        senders[Channel.LOG] = LogSender()
    return senders
