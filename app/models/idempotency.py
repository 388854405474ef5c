"""
Idempotency record model.

One row per (user, idempotency key). The row is inserted with empty
response columns when a publish request is accepted, and the response is
filled in by the same transaction that enqueues the deliveries.
"""
import base64
from datetime import datetime
from sqlalchemy import JSON, String, Text, SmallInteger, LargeBinary, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator
from app.models.base import Base, utcnow


class HeaderPairs(TypeDecorator):
    """
    Ordered list of (name, value) header pairs.

    Stored as a JSON array so order and repeated names survive; values are
    raw bytes and are base64 encoded on the way in.
    """
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return [
            {"name": name, "value": base64.b64encode(raw).decode("ascii")}
            for name, raw in value
        ]

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return [(pair["name"], base64.b64decode(pair["value"])) for pair in value]


class IdempotencyRecord(Base):
    """Saved outcome of a side-effecting request, keyed per user."""
    __tablename__ = "idempotency"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True
    )
    idempotency_key: Mapped[str] = mapped_column(Text, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True
    )
    response_status_code: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    response_headers: Mapped[list[tuple[str, bytes]] | None] = mapped_column(
        HeaderPairs,
        nullable=True
    )
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    def __repr__(self):
        return (
            f"<IdempotencyRecord(user_id={self.user_id}, key={self.idempotency_key}, "
            f"status={self.response_status_code})>"
        )
