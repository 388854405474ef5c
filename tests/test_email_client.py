"""
Email client tests against a mocked HTTP transport.
"""
import json

import httpx
import pytest

from app.exceptions import PermanentDeliveryError, TransientDeliveryError
from app.services.email_client import EmailClient


def make_client(handler) -> EmailClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EmailClient(
        base_url="https://api.postmarkapp.com/",
        sender="newsletter@gmail.com",
        authorization_token="server-token",
        timeout=2.5,
        http_client=http_client,
    )


async def send(client: EmailClient):
    await client.send_email(
        "ada@gmail.com",
        "Issue #1",
        "<p>Hello</p>",
        "Hello"
    )


@pytest.mark.asyncio
async def test_sends_expected_request():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"MessageID": "abc"})

    client = make_client(handler)
    await send(client)
    await client.aclose()

    assert len(requests) == 1
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.postmarkapp.com/email"
    assert request.headers["X-Postmark-Server-Token"] == "server-token"
    assert json.loads(request.content) == {
        "From": "newsletter@gmail.com",
        "To": "ada@gmail.com",
        "Subject": "Issue #1",
        "HtmlBody": "<p>Hello</p>",
        "TextBody": "Hello",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 502, 503])
async def test_server_errors_are_transient(status_code):
    client = make_client(lambda request: httpx.Response(status_code))

    with pytest.raises(TransientDeliveryError) as exc_info:
        await send(client)

    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 422])
async def test_client_errors_are_permanent(status_code):
    client = make_client(lambda request: httpx.Response(status_code))

    with pytest.raises(PermanentDeliveryError) as exc_info:
        await send(client)

    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler)

    with pytest.raises(TransientDeliveryError):
        await send(client)


@pytest.mark.asyncio
async def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)

    with pytest.raises(TransientDeliveryError):
        await send(client)


@pytest.mark.asyncio
async def test_undecodable_response_is_transient():
    client = make_client(lambda request: httpx.Response(
        200,
        headers={"Content-Encoding": "gzip"},
        content=b"not gzip"
    ))

    with pytest.raises(TransientDeliveryError):
        await send(client)
