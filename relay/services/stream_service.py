"""Turn a chunk-structured model response into a series of growing message edits.

The model is called once and answers with one body holding many chunk
objects. Replaying those chunks as edits of the placeholder message gives the
reader a reply that appears to be typed out, while each edit still ends on a
sentence boundary whenever one is available.
"""

import json
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

from relay.logging_config import get_logger
from relay.services.slack_service import truncate_text

logger = get_logger("stream_service")

DEFAULT_FLUSH_THRESHOLD = 30
SENTENCE_BOUNDARIES = ".!?。！？\n"

TEXT_FIELD_PATTERN = re.compile(r'"text"\s*:\s*"((?:[^"\\]|\\.)*)"')
BLOCK_REASON_PATTERN = re.compile(r'"blockReason"\s*:\s*"([^"]+)"')
FINISH_REASON_PATTERN = re.compile(r'"finishReason"\s*:\s*"([^"]+)"')
ERROR_MESSAGE_PATTERN = re.compile(r'"error"\s*:\s*\{[^{}]*?"message"\s*:\s*"((?:[^"\\]|\\.)*)"')


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        logger.warning(f"Could not unescape text fragment, using it verbatim: {value[:50]}")
        return value


def iter_text_fragments(raw_body: Optional[str]) -> Iterator[str]:
    """Yield every ``"text"`` value in the body, in order of appearance."""
    if not raw_body:
        return
    for match in TEXT_FIELD_PATTERN.finditer(raw_body):
        yield _unescape(match.group(1))


def _reason_from_chunk(chunk: dict) -> Optional[str]:
    error = chunk.get("error")
    if isinstance(error, dict) and error.get("message"):
        return error["message"]

    feedback = chunk.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        return f"blocked: {feedback['blockReason']}"

    for candidate in chunk.get("candidates") or []:
        finish_reason = candidate.get("finishReason")
        if finish_reason and finish_reason != "STOP":
            return f"finish reason: {finish_reason}"
    return None


def extract_error_reason(raw_body: Optional[str]) -> Optional[str]:
    """Best-effort explanation of why a response carried no text."""
    if not raw_body:
        return None

    try:
        data = json.loads(raw_body)
    except ValueError:
        data = None

    if data is not None:
        chunks = data if isinstance(data, list) else [data]
        for chunk in chunks:
            if isinstance(chunk, dict):
                reason = _reason_from_chunk(chunk)
                if reason:
                    return reason
        return None

    match = ERROR_MESSAGE_PATTERN.search(raw_body)
    if match:
        return _unescape(match.group(1))
    match = BLOCK_REASON_PATTERN.search(raw_body)
    if match:
        return f"blocked: {match.group(1)}"
    for match in FINISH_REASON_PATTERN.finditer(raw_body):
        if match.group(1) != "STOP":
            return f"finish reason: {match.group(1)}"
    return None


@dataclass
class PublishedReply:
    text: str
    edits: int
    complete: bool


@dataclass
class StreamBuffer:
    accumulated_text: str = ""
    pending_tail: str = ""


class Reassembler:
    """Accumulates fragments and decides when the text is worth an edit.

    ``feed`` and ``finish`` return the full text published so far whenever a
    flush happens, so every value is a prefix of the next one.
    """

    def __init__(self, threshold: int = DEFAULT_FLUSH_THRESHOLD):
        self.threshold = max(1, threshold)
        self.buffer = StreamBuffer()

    @staticmethod
    def _cut_point(tail: str) -> int:
        boundary = max(tail.rfind(char) for char in SENTENCE_BOUNDARIES)
        if boundary < 0:
            return len(tail)
        return boundary + 1

    def _flush(self, cut: int) -> str:
        self.buffer.accumulated_text += self.buffer.pending_tail[:cut]
        self.buffer.pending_tail = self.buffer.pending_tail[cut:]
        return self.buffer.accumulated_text

    def feed(self, fragment: str) -> Optional[str]:
        if not fragment:
            return None
        self.buffer.pending_tail += fragment
        if len(self.buffer.pending_tail) < self.threshold:
            return None
        return self._flush(self._cut_point(self.buffer.pending_tail))

    def finish(self) -> Optional[str]:
        if not self.buffer.pending_tail:
            return None
        return self._flush(len(self.buffer.pending_tail))


def reassemble(fragments: Iterable[str], threshold: int = DEFAULT_FLUSH_THRESHOLD) -> Iterator[str]:
    """Lazily yield the cumulative text at each flush point."""
    reassembler = Reassembler(threshold)
    for fragment in fragments:
        flushed = reassembler.feed(fragment)
        if flushed is not None:
            yield flushed
    final = reassembler.finish()
    if final is not None:
        yield final


def publish_stream(
    raw_body: Optional[str],
    publish: Callable[[str], object],
    *,
    threshold: int = DEFAULT_FLUSH_THRESHOLD,
    error_text: str,
    edit_interval_seconds: float = 0.0,
    max_length: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PublishedReply:
    """Publish each flush of ``raw_body`` and report the last text published.

    Consecutive edits are spaced at least ``edit_interval_seconds`` apart.
    With ``max_length`` a flush whose capped text matches the previous edit is
    skipped. When the body holds no usable text, an error message is published
    instead, carrying the upstream reason when one can be found.
    """
    last_text: Optional[str] = None
    last_visible: Optional[str] = None
    last_edit_at: Optional[float] = None
    edits = 0

    for text in reassemble(iter_text_fragments(raw_body), threshold):
        last_text = text
        visible = truncate_text(text, max_length) if max_length else text
        if visible == last_visible:
            continue
        if last_edit_at is not None and edit_interval_seconds > 0:
            wait = edit_interval_seconds - (time.monotonic() - last_edit_at)
            if wait > 0:
                sleep(wait)
        publish(text)
        last_edit_at = time.monotonic()
        last_visible = visible
        edits += 1

    if last_text is None or not last_text.strip():
        reason = extract_error_reason(raw_body)
        logger.warning(
            "Model response carried no text",
            extra={"context": {"reason": reason, "body_preview": (raw_body or "")[:300]}},
        )
        message = f"{error_text} ({reason})" if reason else error_text
        publish(message)
        return PublishedReply(text=message, edits=edits + 1, complete=False)

    logger.info(f"Published streamed reply in {edits} edits, {len(last_text)} chars")
    return PublishedReply(text=last_text, edits=edits, complete=True)
