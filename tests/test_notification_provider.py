import json

import httpx
import pytest

from backoffice.core.errors import DispatchError
from backoffice.services.notification_provider import (
    EmailDispatchRequest,
    NotificationEngineProvider,
    StubNotificationProvider,
    get_notification_provider,
)


def _request() -> EmailDispatchRequest:
    return EmailDispatchRequest(
        campaign_id="campaign-1",
        batch_id="batch-1",
        to="reader@example.com",
        locale="en-US",
        subject="Hello",
        html_body="<p>Hello</p>",
        text_body="Hello",
        recipient_type="user",
        recipient_id="author-1",
    )


def test_notification_engine_posts_payload_with_api_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers.get("x-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messageId": "mid-1", "status": "accepted"})

    provider = NotificationEngineProvider(
        base_url="http://engine.test/",
        api_key="engine-key",
        transport=httpx.MockTransport(handler),
    )
    result = provider.send_email(_request(), timeout=5.0)

    assert result.message_id == "mid-1"
    assert result.status == "accepted"
    assert seen["url"] == "http://engine.test/internal/campaigns/send-email"
    assert seen["api_key"] == "engine-key"
    assert seen["body"]["to"] == "reader@example.com"
    assert seen["body"]["recipientId"] == "author-1"


def test_notification_engine_reuses_one_client_with_per_request_timeout():
    timeouts = []

    def handler(request: httpx.Request) -> httpx.Response:
        timeouts.append(request.extensions["timeout"]["read"])
        return httpx.Response(200, json={"messageId": f"mid-{len(timeouts)}"})

    provider = NotificationEngineProvider(
        base_url="http://engine.test",
        api_key="engine-key",
        transport=httpx.MockTransport(handler),
    )
    client = provider.client
    provider.send_email(_request(), timeout=2.0)
    provider.send_email(_request(), timeout=7.5)

    assert provider.client is client
    assert timeouts == [2.0, 7.5]

    provider.close()
    assert client.is_closed
    assert provider.client is not client
    provider.close()


def _server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, text="boom")


def _timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("slow", request=request)


def _refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)


@pytest.mark.parametrize("handler", [_server_error, _timeout, _refused])
def test_notification_engine_failures_raise_dispatch_error(handler):
    provider = NotificationEngineProvider(
        base_url="http://engine.test",
        api_key="engine-key",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(DispatchError):
        provider.send_email(_request(), timeout=1.0)


def test_notification_engine_requires_url():
    provider = NotificationEngineProvider(base_url="", api_key="engine-key")
    provider.base_url = ""
    with pytest.raises(DispatchError):
        provider.send_email(_request(), timeout=1.0)


def test_provider_registry():
    assert isinstance(get_notification_provider("stub"), StubNotificationProvider)
    assert get_notification_provider("stub").send_email(_request(), timeout=1.0).status == "sent"
    with pytest.raises(ValueError):
        get_notification_provider("carrier-pigeon")
