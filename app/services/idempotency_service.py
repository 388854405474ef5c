"""
Idempotency store for side-effecting requests.

Flow for a request carrying an idempotency key:

1. try_processing() inserts a bare row in its own committed transaction.
   Only one request per (user, key) can win that insert.
2. The winner performs its side effects and calls save_response() in the
   same transaction, then commits. Either both land or neither does.
3. Losers read the row back: a filled response is replayed verbatim, an
   empty one means the first request is still in flight.

The database is the only synchronisation point, so this holds across any
number of API processes.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from app.exceptions import IdempotencyRecordMissingError
from app.models.idempotency import IdempotencyRecord


MAX_KEY_LENGTH = 50


def parse_idempotency_key(value: str | None) -> str:
    """
    Validate a client-supplied idempotency key.

    Raises:
        ValueError: the key is missing, empty or too long
    """
    if not value:
        raise ValueError("Idempotency key cannot be empty")
    if len(value) > MAX_KEY_LENGTH:
        raise ValueError(f"Idempotency key cannot be longer than {MAX_KEY_LENGTH} characters")
    return value


@dataclass
class SavedResponse:
    """
    HTTP response as persisted: status, ordered raw headers, raw body.

    Header names are text, values are bytes; order and duplicate names are
    kept exactly as produced.
    """
    status_code: int
    headers: list[tuple[str, bytes]] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_response(cls, response: Response) -> "SavedResponse":
        headers = [(name.decode("latin-1"), value) for name, value in response.raw_headers]
        return cls(status_code=response.status_code, headers=headers, body=bytes(response.body))

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [(name.encode("latin-1"), value) for name, value in self.headers]
        return response


class NextAction(str, enum.Enum):
    """What the request handler must do with an idempotency key."""
    START_PROCESSING = "start_processing"
    RETURN_SAVED_RESPONSE = "return_saved_response"
    IN_PROGRESS = "in_progress"


@dataclass
class ProcessingDecision:
    action: NextAction
    saved_response: SavedResponse | None = None


class IdempotencyService:
    """Service for idempotency records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def try_processing(self, user_id: str, idempotency_key: str) -> ProcessingDecision:
        """
        Claim an idempotency key for the current request.

        Args:
            user_id: Authenticated user UUID
            idempotency_key: Validated client key

        Returns:
            START_PROCESSING if this request owns the key,
            RETURN_SAVED_RESPONSE with the stored response if the key was
            already completed, IN_PROGRESS if another request holds it
        """
        stmt = insert(IdempotencyRecord).values(
            user_id=user_id,
            idempotency_key=idempotency_key,
        )
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
        else:
            return ProcessingDecision(NextAction.START_PROCESSING)

        saved = await self.get_saved_response(user_id, idempotency_key)
        if saved is None:
            return ProcessingDecision(NextAction.IN_PROGRESS)
        return ProcessingDecision(NextAction.RETURN_SAVED_RESPONSE, saved)

    async def get_saved_response(self, user_id: str, idempotency_key: str) -> SavedResponse | None:
        """
        Read a completed response.

        Returns:
            SavedResponse, or None if the row is absent or not completed yet
        """
        stmt = (
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == idempotency_key
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        record = result.scalar_one_or_none()

        if not record or record.response_status_code is None:
            return None

        return SavedResponse(
            status_code=record.response_status_code,
            headers=list(record.response_headers or []),
            body=record.response_body or b"",
        )

    async def save_response(
        self,
        user_id: str,
        idempotency_key: str,
        saved: SavedResponse
    ) -> None:
        """
        Fill in the response of a pre-inserted record.

        Runs in the caller's transaction; the caller commits together with
        the side effects of the request.

        Raises:
            IdempotencyRecordMissingError: try_processing was never called
        """
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == idempotency_key
            )
            .values(
                response_status_code=saved.status_code,
                response_headers=saved.headers,
                response_body=saved.body,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            raise IdempotencyRecordMissingError(
                f"No idempotency record for user {user_id} and key {idempotency_key!r}"
            )

    async def release(self, user_id: str, idempotency_key: str) -> None:
        """
        Drop an uncompleted record so the client can retry with the same key.

        Completed records are left untouched.
        """
        stmt = (
            delete(IdempotencyRecord)
            .where(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.response_status_code.is_(None)
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def expire(self, older_than: datetime) -> int:
        """
        Delete records created before the cutoff.

        Returns:
            Number of deleted records
        """
        stmt = (
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.created_at < older_than)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount
