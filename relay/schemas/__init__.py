from relay.schemas.reply import PendingReply
from relay.schemas.slack import InboundEvent, SlackEvent, SlackEventEnvelope, SlackFile

__all__ = ["InboundEvent", "PendingReply", "SlackEvent", "SlackEventEnvelope", "SlackFile"]
