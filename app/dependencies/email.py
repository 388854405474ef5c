"""
Email client dependency for FastAPI routes.

The client is created once in the application lifespan and shared by all
requests.
"""
from fastapi import Request
from app.services.email_client import EmailClient


async def get_email_client(request: Request) -> EmailClient:
    return request.app.state.email_client
