import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from backoffice.core.config import settings
from backoffice.core.errors import DispatchError
from backoffice.core.observability import log_event

logger = logging.getLogger("backoffice.dispatch")


@dataclass(frozen=True)
class EmailDispatchRequest:
    campaign_id: str
    batch_id: str
    to: str
    locale: str
    subject: str
    html_body: str
    text_body: str
    recipient_type: str | None = None
    recipient_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmailDispatchResult:
    provider: str
    message_id: str
    status: str


class NotificationProvider(Protocol):
    name: str

    def send_email(self, request: EmailDispatchRequest, *, timeout: float) -> EmailDispatchResult:
        ...


class StubNotificationProvider:
    name = "stub"

    def send_email(self, request: EmailDispatchRequest, *, timeout: float) -> EmailDispatchResult:
        message_id = f"msg-{uuid.uuid4().hex[:14]}"
        log_event(
            logger,
            "dispatch.stub",
            campaign_id=request.campaign_id,
            batch_id=request.batch_id,
            locale=request.locale,
            message_id=message_id,
        )
        return EmailDispatchResult(provider=self.name, message_id=message_id, status="sent")


class NotificationEngineProvider:
    """Delivers campaign emails through the notification engine's internal API."""

    name = "notification_engine"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.notification_engine_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.notification_engine_api_key
        self.transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        # One pooled client per provider; timeouts are set per request.
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(transport=self.transport)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def send_email(self, request: EmailDispatchRequest, *, timeout: float) -> EmailDispatchResult:
        if not self.base_url:
            raise DispatchError("NOTIFICATION_ENGINE_URL is not configured")
        body = {
            "campaignId": request.campaign_id,
            "batchId": request.batch_id,
            "to": request.to,
            "locale": request.locale,
            "subject": request.subject,
            "htmlBody": request.html_body,
            "textBody": request.text_body,
            "recipientType": request.recipient_type,
            "recipientId": request.recipient_id,
            "metadata": request.metadata,
        }
        try:
            response = self.client.post(
                f"{self.base_url}/internal/campaigns/send-email",
                json=body,
                headers={"x-api-key": self.api_key or ""},
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json() if response.content else {}
        except httpx.TimeoutException as exc:
            raise DispatchError(f"Notification engine timed out after {timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            raise DispatchError(
                f"Notification engine returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise DispatchError(f"Notification engine request failed: {exc}") from exc

        if not isinstance(data, dict):
            data = {}
        return EmailDispatchResult(
            provider=self.name,
            message_id=str(data.get("messageId") or data.get("id") or ""),
            status=str(data.get("status") or "sent"),
        )


_NOTIFICATION_PROVIDERS: dict[str, NotificationProvider] = {
    "stub": StubNotificationProvider(),
    "notification_engine": NotificationEngineProvider(),
}


def get_notification_provider(name: str | None = None) -> NotificationProvider:
    normalized = (name or settings.notification_provider_default or "").strip().lower()
    provider = _NOTIFICATION_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_NOTIFICATION_PROVIDERS))
        raise ValueError(f"Unknown notification provider '{name}'. Available: {available}")
    return provider


def close_notification_providers() -> None:
    for provider in _NOTIFICATION_PROVIDERS.values():
        close = getattr(provider, "close", None)
        if close is not None:
            close()
