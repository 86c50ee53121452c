from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SUPPORTED_EVENT_TYPES = {"app_mention": "mention", "message": "message"}

# Subtypes that describe edits or housekeeping rather than a new question.
IGNORED_MESSAGE_SUBTYPES = {
    "message_changed",
    "message_deleted",
    "message_replied",
    "bot_message",
    "channel_join",
    "channel_leave",
}


class SlackFile(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    mimetype: Optional[str] = None
    size: Optional[int] = None
    url_private: Optional[str] = None
    url_private_download: Optional[str] = None

    @property
    def download_url(self) -> Optional[str]:
        return self.url_private_download or self.url_private


class SlackAuthorization(BaseModel):
    user_id: Optional[str] = None
    is_bot: Optional[bool] = None


class SlackEvent(BaseModel):
    type: str
    subtype: Optional[str] = None
    text: Optional[str] = None
    channel: Optional[str] = None
    ts: Optional[str] = None
    thread_ts: Optional[str] = None
    user: Optional[str] = None
    bot_id: Optional[str] = None
    files: list[SlackFile] = Field(default_factory=list)


class InboundEvent(BaseModel):
    """Normalized view of one webhook delivery."""

    model_config = ConfigDict(frozen=True)

    event_id: Optional[str] = None
    kind: Literal["mention", "message", "challenge"]
    channel: Optional[str] = None
    thread_anchor: Optional[str] = None
    message_ts: Optional[str] = None
    raw_text: str = ""
    attachments: tuple[SlackFile, ...] = ()
    actor_ids: tuple[str, ...] = ()
    bot_id: Optional[str] = None
    subtype: Optional[str] = None


class SlackEventEnvelope(BaseModel):
    type: Optional[str] = None
    challenge: Optional[str] = None
    event_id: Optional[str] = None
    team_id: Optional[str] = None
    event: Optional[SlackEvent] = None
    authed_users: list[str] = Field(default_factory=list)
    authorizations: list[SlackAuthorization] = Field(default_factory=list)

    def bot_user_ids(self) -> list[str]:
        """Candidate bot identities, de-duplicated in first-seen order."""
        candidates = list(self.authed_users) + [a.user_id for a in self.authorizations]
        seen: list[str] = []
        for candidate in candidates:
            if candidate and candidate not in seen:
                seen.append(candidate)
        return seen

    def to_inbound_event(self) -> Optional[InboundEvent]:
        if self.type == "url_verification" or self.challenge:
            return InboundEvent(event_id=self.event_id, kind="challenge", raw_text=self.challenge or "")

        if not self.event or self.event.type not in SUPPORTED_EVENT_TYPES:
            return None

        event = self.event
        return InboundEvent(
            event_id=self.event_id,
            kind=SUPPORTED_EVENT_TYPES[event.type],
            channel=event.channel,
            thread_anchor=event.thread_ts or event.ts,
            message_ts=event.ts,
            raw_text=event.text or "",
            attachments=tuple(event.files),
            actor_ids=tuple(self.bot_user_ids()),
            bot_id=event.bot_id,
            subtype=event.subtype,
        )
