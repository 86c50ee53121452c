import time
from typing import Callable, Optional

from relay.config import Settings
from relay.config import settings as default_settings
from relay.logging_config import get_logger
from relay.schemas.reply import PendingReply
from relay.services.context_service import build_current_turn, build_turns
from relay.services.llm.base import LLMError, LLMProvider
from relay.services.llm.gemini_provider import GeminiProvider
from relay.services.slack_service import SlackService
from relay.services.stream_service import publish_stream

logger = get_logger("reply_service")


def process_pending_reply(
    pending: PendingReply,
    settings: Optional[Settings] = None,
    slack: Optional[SlackService] = None,
    llm: Optional[LLMProvider] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Answer one question by editing its placeholder message in place.

    Returns True when the model's answer was published, False when the
    placeholder ended on an error message (or could not be reached at all).
    """
    settings = settings or default_settings
    slack = slack or SlackService.from_settings(settings)
    llm = llm or GeminiProvider.from_settings(settings)

    message_ts = pending.placeholder_message_id
    if not message_ts:
        logger.warning(
            "Placeholder id missing, posting a new message instead of updating",
            extra={"context": {"channel": pending.channel, "thread_ts": pending.thread_anchor}},
        )
        posted = slack.post_message(pending.channel, settings.placeholder_text, pending.thread_anchor)
        if not posted.ok:
            logger.error(f"Could not post reply message: {posted.error}")
            return False
        message_ts = posted.value

    def publish(text: str) -> None:
        result = slack.update_message(pending.channel, message_ts, text)
        if not result.ok:
            logger.warning(
                "Placeholder update failed",
                extra={"context": {"channel": pending.channel, "ts": message_ts, "error": result.error}},
            )

    try:
        turns = build_turns(
            slack,
            pending.channel,
            pending.thread_anchor,
            settings.history_max_messages,
            pending.actor_ids,
            before_ts=pending.trigger_ts,
            exclude_ts=[message_ts],
            char_budget=settings.history_char_budget,
            max_attachment_bytes=settings.max_attachment_bytes,
        )
        current = build_current_turn(
            pending.question,
            pending.attachments,
            slack,
            max_bytes=settings.max_attachment_bytes,
        )
        if current is None:
            logger.warning("Nothing to ask the model: no text and no usable attachment")
            publish(settings.error_text)
            return False
        turns.append(current)

        logger.info(f"Calling model with {len(turns)} turns")
        raw_body = llm.generate_raw(
            turns,
            system_instruction=settings.system_instruction,
            temperature=settings.temperature,
            max_tokens=settings.max_output_tokens,
        )

        published = publish_stream(
            raw_body,
            publish,
            threshold=settings.flush_threshold,
            error_text=settings.error_text,
            edit_interval_seconds=settings.edit_interval_seconds,
            max_length=settings.max_message_length,
            sleep=sleep,
        )
    except LLMError as e:
        logger.error(f"Model call failed: {e.message}", extra={"context": {"reason": e.reason}})
        publish(settings.error_text)
        return False
    except Exception as e:
        logger.error(f"Reply processing failed: {e}", exc_info=True)
        publish(settings.error_text)
        return False

    return published.complete
