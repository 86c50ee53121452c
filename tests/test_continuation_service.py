from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest

from relay.models import Continuation
from relay.schemas.reply import PendingReply
from relay.services.continuation_service import (
    STATUS_CONSUMED,
    ContinuationNotFound,
    consume_continuation,
    due_continuation_ids,
    retire_continuation,
    run_continuation,
    schedule_continuation,
)


def _pending() -> PendingReply:
    return PendingReply(
        question="what is X?",
        channel="C1",
        thread_anchor="100.1",
        placeholder_message_id="200.2",
        attachments=[{"id": "F1", "mimetype": "image/png", "url_private": "https://files.slack.com/F1"}],
        actor_ids=["UBOT"],
    )


class TestScheduleAndConsume:
    def test_consume_returns_stored_payload_once(self, db_session):
        payload = _pending()

        continuation_id = schedule_continuation(db_session, payload)

        assert consume_continuation(db_session, continuation_id) == payload
        with pytest.raises(ContinuationNotFound) as exc_info:
            consume_continuation(db_session, continuation_id)
        assert exc_info.value.reason == "consumed"

    def test_each_schedule_gets_its_own_id(self, db_session):
        first = schedule_continuation(db_session, _pending())
        second = schedule_continuation(db_session, _pending())

        assert first != second
        assert db_session.query(Continuation).count() == 2

    def test_unknown_id_is_not_found(self, db_session):
        with pytest.raises(ContinuationNotFound) as exc_info:
            consume_continuation(db_session, uuid4())
        assert exc_info.value.reason == "missing"

    def test_expired_payload_is_not_found(self, db_session):
        continuation_id = schedule_continuation(db_session, _pending())
        record = db_session.query(Continuation).filter(Continuation.id == continuation_id).first()
        record.run_at = datetime.now(timezone.utc) - timedelta(hours=1)
        db_session.commit()

        with pytest.raises(ContinuationNotFound) as exc_info:
            consume_continuation(db_session, continuation_id, ttl_seconds=600)
        assert exc_info.value.reason == "expired"

    def test_time_before_due_does_not_count_towards_ttl(self, db_session):
        continuation_id = schedule_continuation(db_session, _pending())
        record = db_session.query(Continuation).filter(Continuation.id == continuation_id).first()
        record.created_at = datetime.now(timezone.utc) - timedelta(seconds=601)
        record.run_at = datetime.now(timezone.utc) - timedelta(seconds=5)
        db_session.commit()

        assert consume_continuation(db_session, continuation_id, ttl_seconds=600) == _pending()

    def test_consume_marks_row_consumed(self, db_session):
        continuation_id = schedule_continuation(db_session, _pending())

        consume_continuation(db_session, continuation_id)

        db_session.expire_all()
        record = db_session.query(Continuation).filter(Continuation.id == continuation_id).first()
        assert record.status == STATUS_CONSUMED


class TestRetire:
    def test_retire_deletes_row(self, db_session):
        continuation_id = schedule_continuation(db_session, _pending())

        assert retire_continuation(db_session, continuation_id) is True
        assert retire_continuation(db_session, continuation_id) is False
        with pytest.raises(ContinuationNotFound):
            consume_continuation(db_session, continuation_id)


class TestDueContinuations:
    def test_only_due_pending_rows(self, db_session):
        due = schedule_continuation(db_session, _pending(), delay_seconds=0)
        later = schedule_continuation(db_session, _pending(), delay_seconds=3600)
        consumed = schedule_continuation(db_session, _pending(), delay_seconds=0)
        consume_continuation(db_session, consumed)

        ids = due_continuation_ids(db_session, limit=10, now=datetime.now(timezone.utc) + timedelta(seconds=1))

        assert ids == [due]
        assert later not in ids

    def test_respects_limit(self, db_session):
        for _ in range(3):
            schedule_continuation(db_session, _pending())

        ids = due_continuation_ids(db_session, limit=2, now=datetime.now(timezone.utc) + timedelta(seconds=1))

        assert len(ids) == 2


class TestRunContinuation:
    @patch("relay.services.continuation_service.process_pending_reply")
    def test_processes_payload_and_retires(self, mock_process, session_factory, test_settings):
        mock_process.return_value = True
        db = session_factory()
        continuation_id = schedule_continuation(db, _pending())
        db.close()

        result = run_continuation(continuation_id, settings=test_settings, session_factory=session_factory)

        assert result is True
        mock_process.assert_called_once()
        assert mock_process.call_args.args[0] == _pending()
        check = session_factory()
        assert check.query(Continuation).count() == 0
        check.close()

    @patch("relay.services.continuation_service.process_pending_reply")
    def test_lost_payload_has_no_side_effects(self, mock_process, session_factory, test_settings):
        result = run_continuation(uuid4(), settings=test_settings, session_factory=session_factory)

        assert result is False
        mock_process.assert_not_called()

    @patch("relay.services.continuation_service.process_pending_reply")
    def test_failure_still_retires(self, mock_process, session_factory, test_settings):
        mock_process.side_effect = RuntimeError("boom")
        db = session_factory()
        continuation_id = schedule_continuation(db, _pending())
        db.close()

        result = run_continuation(continuation_id, settings=test_settings, session_factory=session_factory)

        assert result is False
        check = session_factory()
        assert check.query(Continuation).count() == 0
        check.close()

    @patch("relay.services.continuation_service.process_pending_reply")
    def test_second_firing_does_nothing(self, mock_process, session_factory, test_settings):
        mock_process.return_value = True
        db = session_factory()
        continuation_id = schedule_continuation(db, _pending())
        db.close()

        run_continuation(continuation_id, settings=test_settings, session_factory=session_factory)
        run_continuation(continuation_id, settings=test_settings, session_factory=session_factory)

        assert mock_process.call_count == 1
