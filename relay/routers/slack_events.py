import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from relay.config import settings
from relay.database import get_db
from relay.logging_config import get_logger
from relay.schemas.reply import PendingReply
from relay.schemas.slack import IGNORED_MESSAGE_SUBTYPES, InboundEvent, SlackEventEnvelope
from relay.services.context_service import strip_mentions
from relay.services.continuation_service import schedule_continuation
from relay.services.dedup_service import DedupGate
from relay.services.reply_service import process_pending_reply
from relay.services.slack_service import SlackService

logger = get_logger("slack_events")

router = APIRouter()


def _ack() -> JSONResponse:
    return JSONResponse({}, status_code=200)


def get_dedup_gate() -> DedupGate:
    return DedupGate.from_settings(settings)


async def parse_slack_payload(request: Request) -> Optional[dict]:
    """
    Parse the Events API body with tolerant decoding.
    Returns dict or None.
    """
    try:
        body = await request.json()
        return body if isinstance(body, dict) else None
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = json.loads(raw.decode(enc, errors="replace"))
            return decoded if isinstance(decoded, dict) else None
        except ValueError:
            continue

    logger.error("Failed to decode Slack payload after fallbacks")
    return None


def _should_ignore(event: InboundEvent) -> Optional[str]:
    if event.bot_id:
        return "bot message"
    if event.subtype in IGNORED_MESSAGE_SUBTYPES:
        return f"subtype {event.subtype}"
    if not event.channel or not event.thread_anchor:
        return "missing channel or ts"
    if not event.raw_text and not event.attachments:
        return "no text and no files"
    return None


@router.post("/slack/events")
async def handle_slack_event(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dedup: DedupGate = Depends(get_dedup_gate),
):
    """
    Slack Events API intake:
    - url_verification -> echo the challenge
    - app_mention / message -> placeholder reply + deferred answer
    Always acknowledges with 200 so Slack does not retry.
    """
    try:
        body = await parse_slack_payload(request)
        if body is None:
            return _ack()

        logger.debug(f"Slack payload received: {body}")

        if body.get("type") == "url_verification" or body.get("challenge"):
            logger.info("Responding to Slack URL verification challenge")
            return PlainTextResponse(str(body.get("challenge") or ""))

        try:
            envelope = SlackEventEnvelope.model_validate(body)
        except ValidationError as e:
            logger.warning("Slack payload validation failed", extra={"context": {"error": str(e)}})
            return _ack()

        event = envelope.to_inbound_event()
        if event is None:
            logger.info("Event ignored (unsupported type)")
            return _ack()

        reason = _should_ignore(event)
        if reason:
            logger.info(f"Event ignored ({reason})", extra={"context": {"event_id": event.event_id}})
            return _ack()

        if event.event_id:
            if await dedup.is_duplicate(event.event_id):
                logger.info(f"Duplicate event skipped: {event.event_id}")
                return _ack()
        else:
            logger.warning("event_id not found (cannot deduplicate)")

        query = strip_mentions(event.raw_text, event.actor_ids)
        if not query and not event.attachments:
            logger.info("Event ignored (mention without a question)", extra={"context": {"event_id": event.event_id}})
            return _ack()

        logger.info(f"Parsed query: {query}", extra={"context": {"event_id": event.event_id}})
        _start_reply(event, query, db, background_tasks)

    except Exception as e:
        logger.error(f"Slack event handling failed: {e}", exc_info=True)

    return _ack()


def _start_reply(event: InboundEvent, query: str, db: Session, background_tasks: BackgroundTasks) -> None:
    slack = SlackService.from_settings(settings)
    posted = slack.post_message(event.channel, settings.placeholder_text, event.thread_anchor)
    if not posted.ok:
        logger.error(
            "Could not post placeholder, dropping event",
            extra={"context": {"event_id": event.event_id, "error": posted.error}},
        )
        return

    pending = PendingReply(
        question=query,
        channel=event.channel,
        thread_anchor=event.thread_anchor,
        trigger_ts=event.message_ts,
        placeholder_message_id=posted.value,
        attachments=list(event.attachments),
        actor_ids=list(event.actor_ids),
    )

    if settings.reply_mode == "inline":
        background_tasks.add_task(process_pending_reply, pending, settings)
        logger.info("Reply queued as background task", extra={"context": {"event_id": event.event_id}})
        return

    try:
        continuation_id = schedule_continuation(db, pending, delay_seconds=settings.continuation_delay_seconds)
    except Exception as e:
        logger.error(f"Could not schedule continuation: {e}", exc_info=True)
        db.rollback()
        slack.update_message(event.channel, posted.value, settings.error_text)
        return

    logger.info(
        "Reply deferred",
        extra={"context": {"event_id": event.event_id, "continuation_id": str(continuation_id)}},
    )
