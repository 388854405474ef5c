"""
Rate limiting on the subscription endpoint.
"""
import pytest

from app.dependencies.rate_limit import check_rate_limit
from app.main import app
from app.services import rate_limiter as rate_limiter_module
from app.services.rate_limiter import RateLimiter


@pytest.mark.asyncio
async def test_limiter_fails_open_without_redis():
    # Nothing listens on port 1
    limiter = RateLimiter(redis_url="redis://127.0.0.1:1", limit=1, window=60)

    assert await limiter.is_allowed("203.0.113.7") == (True, 0)
    assert await limiter.is_allowed("203.0.113.7") == (True, 0)


@pytest.mark.asyncio
async def test_blocked_client_gets_429(client, email_client, monkeypatch):
    async def deny(client_key):
        return False, 42

    monkeypatch.setattr(rate_limiter_module.rate_limiter, "is_allowed", deny)
    app.dependency_overrides.pop(check_rate_limit)

    response = await client.post(
        "/subscriptions",
        json={"name": "Ursula", "email": "ursula@gmail.com"}
    )

    assert response.status_code == 429
    assert response.headers["retry-after"] == "42"
    assert email_client.sent == []
