from typing import Optional

import httpx

from relay.config import Settings
from relay.logging_config import get_logger
from relay.services.result import HTTP_ERROR, INVALID_RESPONSE, NOT_CONFIGURED, SLACK_ERROR, Result

logger = get_logger("slack_service")

TRUNCATION_MARKER = "…"
REPLIES_PAGE_SIZE = 200
REPLIES_MAX_PAGES = 10


def truncate_text(text: str, max_length: int) -> str:
    """Cap a message body at the platform limit."""
    if max_length <= 0 or len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


class SlackService:
    """Service for posting and editing messages through the Slack Web API."""

    BASE_URL = "https://slack.com/api"

    def __init__(
        self,
        bot_token: Optional[str],
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_message_length: int = 3900,
    ):
        self.bot_token = bot_token
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_message_length = max_message_length

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlackService":
        return cls(
            settings.slack_bot_token,
            base_url=settings.slack_api_base_url,
            timeout=settings.http_timeout_seconds,
            max_message_length=settings.max_message_length,
        )

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.bot_token}"}

    def _make_request(self, method: str, data: Optional[dict] = None, http_method: str = "POST") -> Result[dict]:
        """Make request to Slack API."""
        if not self.bot_token:
            logger.error(f"Slack token is missing (SLACK_BOT_TOKEN not set), cannot call {method}")
            return Result.failure("Slack bot token is not configured", NOT_CONFIGURED)

        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                if http_method == "GET":
                    response = client.get(url, params=data or {}, headers=self._headers())
                else:
                    response = client.post(url, json=data or {}, headers=self._headers())
        except Exception as e:
            logger.error(f"Slack API error: {method}: {e}")
            return Result.failure(str(e), HTTP_ERROR)

        if response.status_code != 200:
            logger.error(f"Slack API {method} returned {response.status_code}: {response.text[:200]}")
            return Result.failure(f"HTTP {response.status_code}", HTTP_ERROR)

        try:
            body = response.json()
        except ValueError:
            logger.error(f"Slack API {method} returned non-JSON body")
            return Result.failure("Invalid JSON from Slack", INVALID_RESPONSE)

        logger.debug(f"Slack API {method} response: {body}")
        if not body.get("ok"):
            error = body.get("error") or "unknown_error"
            logger.warning(f"Slack API {method} failed: {error}")
            return Result.failure(error, SLACK_ERROR)

        return Result.success(body)

    def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> Result[str]:
        """Post a message and return its ts, which Slack uses as the message id."""
        data = {"channel": channel, "text": truncate_text(text, self.max_message_length)}
        if thread_ts:
            data["thread_ts"] = thread_ts

        result = self._make_request("chat.postMessage", data)
        if not result.ok:
            return Result.failure(result.error, result.error_code)

        ts = result.value.get("ts") or (result.value.get("message") or {}).get("ts")
        if not ts:
            return Result.failure("chat.postMessage response has no ts", INVALID_RESPONSE)
        return Result.success(ts)

    def update_message(self, channel: str, ts: str, text: str) -> Result[dict]:
        """Replace the whole text of an existing message."""
        data = {
            "channel": channel,
            "ts": ts,
            "text": truncate_text(text, self.max_message_length),
        }
        return self._make_request("chat.update", data)

    def list_replies(
        self,
        channel: str,
        thread_ts: str,
        limit: int,
        latest: Optional[str] = None,
    ) -> Result[list[dict]]:
        """Return the most recent ``limit`` messages of a thread, oldest first.

        With ``latest`` only messages posted strictly before that ts are listed.
        """
        messages: list[dict] = []
        cursor = None
        for _ in range(REPLIES_MAX_PAGES):
            params = {"channel": channel, "ts": thread_ts, "limit": REPLIES_PAGE_SIZE}
            if latest:
                params["latest"] = latest
                params["inclusive"] = "false"
            if cursor:
                params["cursor"] = cursor

            result = self._make_request("conversations.replies", params, http_method="GET")
            if not result.ok:
                return Result.failure(result.error, result.error_code)

            messages.extend(result.value.get("messages") or [])
            cursor = (result.value.get("response_metadata") or {}).get("next_cursor")
            if not result.value.get("has_more") or not cursor:
                break

        if limit > 0:
            messages = messages[-limit:]
        return Result.success(messages)

    def download_file(self, url: str, max_bytes: Optional[int] = None) -> Result[tuple[bytes, str]]:
        """Fetch a private file; returns raw bytes and the declared content type."""
        if not self.bot_token:
            logger.error("Slack token is missing (SLACK_BOT_TOKEN not set), cannot download file")
            return Result.failure("Slack bot token is not configured", NOT_CONFIGURED)

        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                response = client.get(url, headers=self._headers())
        except Exception as e:
            logger.warning(f"Slack file download failed: {e}")
            return Result.failure(str(e), HTTP_ERROR)

        if response.status_code != 200:
            logger.warning(f"Slack file download returned {response.status_code}")
            return Result.failure(f"HTTP {response.status_code}", HTTP_ERROR)

        content_type = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
        if content_type == "text/html":
            # Slack serves its login page when the token lacks files:read.
            return Result.failure("Slack returned an HTML page instead of the file", INVALID_RESPONSE)

        content = response.content
        if max_bytes and len(content) > max_bytes:
            return Result.failure(f"File exceeds {max_bytes} bytes", INVALID_RESPONSE)

        return Result.success((content, content_type))
