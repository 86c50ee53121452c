from typing import Optional

from pydantic import BaseModel, Field

from relay.schemas.slack import SlackFile


class PendingReply(BaseModel):
    """Everything the continuation needs to answer one question."""

    question: str
    channel: str
    thread_anchor: str
    trigger_ts: Optional[str] = None
    placeholder_message_id: Optional[str] = None
    attachments: list[SlackFile] = Field(default_factory=list)
    actor_ids: list[str] = Field(default_factory=list)
