import re
from typing import Iterable, List, Optional, Sequence, Union

from relay.logging_config import get_logger
from relay.schemas.slack import SlackFile
from relay.services.llm.base import ConversationTurn, InlineMediaPart, TextPart
from relay.services.slack_service import SlackService

logger = get_logger("context_service")

SUPPORTED_MEDIA_TYPES = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)

LEADING_MENTION_PATTERN = re.compile(r"^<@[^>]+>\s*")


def strip_mentions(text: Optional[str], bot_ids: Optional[Sequence[str]]) -> str:
    """Remove the bot's own ``<@ID>`` mentions from a message.

    Without any known bot id only the first leading mention is removed.
    """
    if not text:
        return ""

    known_ids = [bot_id for bot_id in (bot_ids or []) if bot_id]
    if not known_ids:
        return LEADING_MENTION_PATTERN.sub("", text, count=1).strip()

    for bot_id in known_ids:
        text = re.sub(rf"<@{re.escape(bot_id)}>\s*", "", text)
    return text.strip()


def is_supported_media(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and mime_type.lower() in SUPPORTED_MEDIA_TYPES


def _coerce_file(attachment: Union[SlackFile, dict]) -> SlackFile:
    if isinstance(attachment, SlackFile):
        return attachment
    return SlackFile.model_validate(attachment)


def attachments_to_parts(
    attachments: Iterable[Union[SlackFile, dict]],
    slack: SlackService,
    max_bytes: Optional[int] = None,
) -> List[InlineMediaPart]:
    """Download supported image attachments as inline media parts."""
    parts: List[InlineMediaPart] = []
    for raw in attachments or []:
        attachment = _coerce_file(raw)
        if not is_supported_media(attachment.mimetype):
            logger.info(f"Skipping unsupported attachment: name={attachment.name}, mimetype={attachment.mimetype}")
            continue
        if max_bytes and attachment.size and attachment.size > max_bytes:
            logger.info(f"Skipping oversized attachment: name={attachment.name}, size={attachment.size}")
            continue
        if not attachment.download_url:
            logger.warning(f"Attachment has no download url: id={attachment.id}")
            continue

        result = slack.download_file(attachment.download_url, max_bytes=max_bytes)
        if not result.ok:
            logger.warning(
                "Attachment download failed, dropping it",
                extra={"context": {"file_id": attachment.id, "error": result.error}},
            )
            continue

        content, content_type = result.value
        mime_type = content_type if is_supported_media(content_type) else attachment.mimetype.lower()
        parts.append(InlineMediaPart(mime_type=mime_type, data=content))
    return parts


def message_role(message: dict, bot_ids: Sequence[str]) -> str:
    if message.get("bot_id") or message.get("user") in bot_ids:
        return "model"
    return "user"


def build_current_turn(
    question: str,
    attachments: Iterable[Union[SlackFile, dict]],
    slack: SlackService,
    max_bytes: Optional[int] = None,
) -> Optional[ConversationTurn]:
    parts: list = []
    if question:
        parts.append(TextPart(question))
    parts.extend(attachments_to_parts(attachments, slack, max_bytes=max_bytes))
    if not parts:
        return None
    return ConversationTurn(role="user", parts=parts)


def trim_to_budget(turns: List[ConversationTurn], char_budget: Optional[int]) -> List[ConversationTurn]:
    """Drop the oldest turns until the text fits the budget, then start on a user turn."""
    trimmed = list(turns)
    if char_budget is not None and char_budget >= 0:
        total = sum(turn.text_length for turn in trimmed)
        while trimmed and total > char_budget:
            total -= trimmed.pop(0).text_length
    while trimmed and trimmed[0].role != "user":
        trimmed.pop(0)
    return trimmed


def _ts_key(ts: Optional[str]) -> tuple[int, int]:
    seconds, _, fraction = str(ts or "").partition(".")
    try:
        return int(seconds or 0), int(fraction.ljust(6, "0")[:6] or 0)
    except ValueError:
        return 0, 0


def build_turns(
    slack: SlackService,
    channel: str,
    thread_anchor: str,
    max_messages: int,
    bot_ids: Sequence[str],
    *,
    before_ts: Optional[str] = None,
    exclude_ts: Iterable[str] = (),
    char_budget: Optional[int] = None,
    max_attachment_bytes: Optional[int] = None,
) -> List[ConversationTurn]:
    """Turn a thread's history into model turns.

    With ``before_ts`` (the ts of the message being answered) history is every
    message posted before it, so later follow-ups never leak in. Without it the
    last fetched message is taken to be the one being answered and is left out.
    Messages listed in ``exclude_ts`` (the placeholder) are always dropped.
    At most ``max_messages`` messages end up in the history.
    """
    excluded = {ts for ts in exclude_ts if ts}
    if before_ts:
        result = slack.list_replies(channel, thread_anchor, max_messages, latest=before_ts)
    else:
        # The trigger and the excluded messages are fetched too and dropped below.
        result = slack.list_replies(channel, thread_anchor, max_messages + len(excluded) + 1)
    if not result.ok:
        logger.warning(
            "Could not fetch thread history, answering without it",
            extra={"context": {"channel": channel, "thread_ts": thread_anchor, "error": result.error}},
        )
        return []

    messages = [message for message in result.value if message.get("ts") not in excluded]
    if before_ts:
        cutoff = _ts_key(before_ts)
        history = [message for message in messages if _ts_key(message.get("ts")) < cutoff]
    else:
        history = messages[:-1]
    if max_messages > 0:
        history = history[-max_messages:]

    turns: List[ConversationTurn] = []
    for message in history:
        role = message_role(message, bot_ids)
        text = strip_mentions(message.get("text"), bot_ids)

        parts: list = []
        if text:
            parts.append(TextPart(text))
        parts.extend(attachments_to_parts(message.get("files") or [], slack, max_bytes=max_attachment_bytes))

        if not parts:
            logger.debug(f"Skipping empty history message ts={message.get('ts')}")
            continue
        turns.append(ConversationTurn(role=role, parts=parts))

    return trim_to_budget(turns, char_budget)
