"""
Publishing endpoint tests: fan-out into the delivery queue and
idempotent retries.
"""
import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from app.models.newsletter import NewsletterIssue
from app.models.subscription import SubscriptionStatus
from app.services.delivery_queue import DeliveryQueue
from app.services.idempotency_service import IdempotencyService
from app.services.newsletter_service import NewsletterService
from app.worker import DeliveryWorker
from conftest import add_subscriber


ISSUE = {
    "title": "Newsletter title",
    "text_content": "Newsletter body as plain text",
    "html_content": "<p>Newsletter body as HTML</p>",
}


@pytest.fixture
def subscribers():
    return ["ada@gmail.com", "grace@gmail.com", "linus@gmail.com"]


@pytest_asyncio.fixture
async def confirmed(session_factory, subscribers):
    for email in subscribers:
        await add_subscriber(session_factory, email)
    await add_subscriber(
        session_factory,
        "pending@gmail.com",
        status=SubscriptionStatus.PENDING_CONFIRMATION
    )
    return subscribers


async def count_issues(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(NewsletterIssue))
        return result.scalar_one()


async def count_tasks(session_factory) -> int:
    async with session_factory() as session:
        return await DeliveryQueue(session).pending_count()


def publish(client, headers, key="publish-1", **overrides):
    return client.post(
        "/api/newsletters",
        json={**ISSUE, **overrides},
        headers={**headers, "Idempotency-Key": key}
    )


@pytest.mark.asyncio
async def test_publish_queues_one_task_per_confirmed_subscriber(
    client, auth_headers, session_factory, confirmed
):
    response = await publish(client, auth_headers)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "publishing"
    assert body["deliveries_enqueued"] == 3

    async with session_factory() as session:
        queue = DeliveryQueue(session)
        for email in confirmed:
            assert await queue.get(body["issue_id"], email) is not None
        assert await queue.get(body["issue_id"], "pending@gmail.com") is None


@pytest.mark.asyncio
async def test_publish_without_subscribers(client, auth_headers, session_factory):
    response = await publish(client, auth_headers)

    assert response.status_code == 202
    assert response.json()["deliveries_enqueued"] == 0
    assert await count_issues(session_factory) == 1


@pytest.mark.asyncio
async def test_published_issue_reaches_every_subscriber_once(
    client, auth_headers, session_factory, email_client, confirmed
):
    await publish(client, auth_headers)

    worker = DeliveryWorker(session_factory, email_client)
    await worker.run_until_empty()

    assert sorted(email_client.recipients()) == sorted(confirmed)
    assert all(sent.subject == ISSUE["title"] for sent in email_client.sent)
    assert await count_tasks(session_factory) == 0


@pytest.mark.asyncio
async def test_retry_with_same_key_replays_response(
    client, auth_headers, session_factory, confirmed
):
    first = await publish(client, auth_headers)
    second = await publish(client, auth_headers)

    assert second.status_code == first.status_code == 202
    assert second.headers.raw == first.headers.raw
    assert second.content == first.content
    assert await count_issues(session_factory) == 1
    assert await count_tasks(session_factory) == 3


@pytest.mark.asyncio
async def test_replay_ignores_changed_body(client, auth_headers, session_factory, confirmed):
    first = await publish(client, auth_headers)
    second = await publish(client, auth_headers, title="Edited title")

    assert second.content == first.content
    assert await count_issues(session_factory) == 1


@pytest.mark.asyncio
async def test_different_keys_publish_twice(client, auth_headers, session_factory, confirmed):
    await publish(client, auth_headers, key="publish-1")
    await publish(client, auth_headers, key="publish-2")

    assert await count_issues(session_factory) == 2
    assert await count_tasks(session_factory) == 6


@pytest.mark.asyncio
async def test_key_in_request_body(client, auth_headers, session_factory, confirmed):
    payload = {**ISSUE, "idempotency_key": "body-key"}
    first = await client.post("/api/newsletters", json=payload, headers=auth_headers)
    second = await client.post("/api/newsletters", json=payload, headers=auth_headers)

    assert first.status_code == second.status_code == 202
    assert await count_issues(session_factory) == 1


@pytest.mark.asyncio
async def test_request_in_flight_gets_409(client, auth_headers, publisher, session_factory):
    async with session_factory() as session:
        await IdempotencyService(session).try_processing(publisher.id, "publish-1")

    response = await publish(client, auth_headers)

    assert response.status_code == 409
    assert response.headers["retry-after"] == "1"
    assert await count_issues(session_factory) == 0


@pytest.mark.asyncio
async def test_concurrent_requests_with_same_key_publish_once(
    client, auth_headers, session_factory, confirmed
):
    first, second = await asyncio.gather(
        publish(client, auth_headers),
        publish(client, auth_headers)
    )

    statuses = sorted([first.status_code, second.status_code])
    assert statuses in ([202, 202], [202, 409])
    if statuses == [202, 202]:
        assert first.content == second.content
    assert await count_issues(session_factory) == 1
    assert await count_tasks(session_factory) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    SQLAlchemyError("connection lost"),
    ConnectionResetError("connection reset by peer"),
    RuntimeError("bug in fan-out"),
])
async def test_failed_publish_releases_key(
    client, auth_headers, session_factory, confirmed, monkeypatch, error
):
    async def broken_enqueue(self, issue_id):
        raise error

    with monkeypatch.context() as patch:
        patch.setattr(NewsletterService, "enqueue_delivery_tasks", broken_enqueue)
        response = await publish(client, auth_headers)

    assert response.status_code == 500
    assert await count_issues(session_factory) == 0

    retry = await publish(client, auth_headers)

    assert retry.status_code == 202
    assert await count_tasks(session_factory) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["", "k" * 51])
async def test_invalid_idempotency_key_is_rejected(client, auth_headers, session_factory, key):
    response = await publish(client, auth_headers, key=key)

    assert response.status_code == 400
    assert await count_issues(session_factory) == 0


@pytest.mark.asyncio
async def test_missing_idempotency_key_is_rejected(client, auth_headers):
    response = await client.post("/api/newsletters", json=ISSUE, headers=auth_headers)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_missing_fields_are_rejected(client, auth_headers):
    response = await client.post(
        "/api/newsletters",
        json={"title": "Only a title"},
        headers={**auth_headers, "Idempotency-Key": "publish-1"}
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_publish_requires_token(client, session_factory):
    response = await publish(client, {})

    assert response.status_code in (401, 403)
    assert await count_issues(session_factory) == 0


@pytest.mark.asyncio
async def test_publish_rejects_invalid_token(client):
    response = await publish(client, {"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_issue_reports_pending_deliveries(client, auth_headers, confirmed):
    published = await publish(client, auth_headers)
    issue_id = published.json()["issue_id"]

    response = await client.get(f"/api/newsletters/{issue_id}", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == issue_id
    assert body["title"] == ISSUE["title"]
    assert body["pending_deliveries"] == 3


@pytest.mark.asyncio
async def test_get_unknown_issue(client, auth_headers):
    response = await client.get("/api/newsletters/does-not-exist", headers=auth_headers)

    assert response.status_code == 404
