"""Deferred second phase of a reply.

The webhook handler has to answer within a few seconds, so it only stores a
``PendingReply`` and leaves the slow work to a continuation fired later by the
worker loop. The stored row's id is the continuation id, so a payload and its
continuation can never be paired wrongly.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from relay.config import Settings
from relay.config import settings as default_settings
from relay.database import SessionLocal
from relay.logging_config import LoggerAdapter, get_logger
from relay.models import Continuation
from relay.schemas.reply import PendingReply
from relay.services.llm.base import LLMProvider
from relay.services.reply_service import process_pending_reply
from relay.services.slack_service import SlackService

logger = get_logger("continuation_service")

STATUS_PENDING = "PENDING"
STATUS_CONSUMED = "CONSUMED"


class ContinuationNotFound(LookupError):
    def __init__(self, continuation_id, reason: str = "missing"):
        self.continuation_id = continuation_id
        self.reason = reason
        super().__init__(f"No pending payload for continuation {continuation_id} ({reason})")


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def schedule_continuation(db: Session, payload: PendingReply, delay_seconds: float = 0.0) -> UUID:
    """Store the payload and register it to run after ``delay_seconds``."""
    now = datetime.now(timezone.utc)
    record = Continuation(
        id=uuid.uuid4(),
        payload_json=payload.model_dump(mode="json"),
        status=STATUS_PENDING,
        run_at=now + timedelta(seconds=max(delay_seconds, 0.0)),
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    db.commit()

    logger.info(
        "Continuation scheduled",
        extra={"context": {"continuation_id": str(record.id), "channel": payload.channel}},
    )
    return record.id


def consume_continuation(
    db: Session,
    continuation_id: UUID,
    ttl_seconds: Optional[int] = None,
) -> PendingReply:
    """Hand out the payload exactly once.

    Raises ContinuationNotFound when the payload is gone, was already
    consumed, or has been due for longer than ``ttl_seconds``.
    """
    record = db.query(Continuation).filter(Continuation.id == continuation_id).first()
    if record is None:
        raise ContinuationNotFound(continuation_id)
    if record.status != STATUS_PENDING:
        raise ContinuationNotFound(continuation_id, reason="consumed")

    now = datetime.now(timezone.utc)
    if ttl_seconds is not None:
        age_seconds = (now - _ensure_timezone(record.run_at)).total_seconds()
        if age_seconds > ttl_seconds:
            raise ContinuationNotFound(continuation_id, reason="expired")

    payload_json = record.payload_json
    claimed = (
        db.query(Continuation)
        .filter(Continuation.id == continuation_id, Continuation.status == STATUS_PENDING)
        .update({"status": STATUS_CONSUMED, "updated_at": now}, synchronize_session=False)
    )
    db.commit()
    if claimed == 0:
        raise ContinuationNotFound(continuation_id, reason="consumed")

    return PendingReply.model_validate(payload_json)


def retire_continuation(db: Session, continuation_id: UUID) -> bool:
    """Delete the registration so it can never fire again."""
    deleted = (
        db.query(Continuation).filter(Continuation.id == continuation_id).delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


def due_continuation_ids(db: Session, limit: int = 10, now: Optional[datetime] = None) -> list[UUID]:
    now = now or datetime.now(timezone.utc)
    rows = (
        db.query(Continuation.id)
        .filter(Continuation.status == STATUS_PENDING, Continuation.run_at <= now)
        .order_by(Continuation.run_at)
        .limit(limit)
        .all()
    )
    return [row.id for row in rows]


def run_continuation(
    continuation_id: UUID,
    *,
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    slack: Optional[SlackService] = None,
    llm: Optional[LLMProvider] = None,
) -> bool:
    """Body of one fired continuation. Never raises."""
    settings = settings or default_settings
    session_factory = session_factory or SessionLocal
    log = LoggerAdapter(logger, {"continuation_id": str(continuation_id)})
    log.info("Continuation fired")

    db = session_factory()
    try:
        try:
            pending = consume_continuation(db, continuation_id, ttl_seconds=settings.continuation_ttl_seconds)
        except ContinuationNotFound as e:
            log.error(f"No payload for continuation, skipping: {e.reason}")
            return False

        return process_pending_reply(pending, settings, slack=slack, llm=llm)
    except Exception as e:
        log.error(f"Continuation failed: {e}", exc_info=True)
        return False
    finally:
        try:
            db.rollback()
            retire_continuation(db, continuation_id)
            log.info("Continuation retired")
        except Exception as e:
            log.error(f"Could not retire continuation: {e}")
        db.close()
