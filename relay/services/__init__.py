from relay.services.context_service import (
    attachments_to_parts,
    build_current_turn,
    build_turns,
    strip_mentions,
)
from relay.services.continuation_service import (
    ContinuationNotFound,
    consume_continuation,
    retire_continuation,
    run_continuation,
    schedule_continuation,
)
from relay.services.dedup_service import DedupGate
from relay.services.reply_service import process_pending_reply
from relay.services.stream_service import Reassembler, publish_stream, reassemble
