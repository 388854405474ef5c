"""
Rate limit dependency for FastAPI routes.
"""
from fastapi import Request, HTTPException
from app.routes.metrics import track_rate_limit_exceeded
from app.services.rate_limiter import rate_limiter


async def check_rate_limit(request: Request):
    """
    Check rate limit for the calling client (by IP address).

    Raises 429 if limit exceeded.
    """
    client_key = request.client.host if request.client else "unknown"
    allowed, retry_after = await rate_limiter.is_allowed(client_key)

    if not allowed:
        track_rate_limit_exceeded(request.url.path)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )
