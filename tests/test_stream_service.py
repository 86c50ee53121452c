import json
from unittest.mock import Mock

from relay.services.stream_service import (
    Reassembler,
    extract_error_reason,
    iter_text_fragments,
    publish_stream,
    reassemble,
)


def _chunked_body(*texts: str) -> str:
    chunks = [
        {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}, "index": 0}]} for text in texts
    ]
    chunks[-1]["candidates"][0]["finishReason"] = "STOP"
    return json.dumps(chunks, indent=2, ensure_ascii=False)


class TestIterTextFragments:
    def test_yields_fragments_in_order(self):
        body = _chunked_body("Hello", " world", "!")

        assert list(iter_text_fragments(body)) == ["Hello", " world", "!"]

    def test_unescapes_json_strings(self):
        body = _chunked_body('He said "hi"\nthen left', "\\o/", "あいう")

        assert list(iter_text_fragments(body)) == ['He said "hi"\nthen left', "\\o/", "あいう"]

    def test_handles_ascii_escaped_unicode(self):
        body = json.dumps([{"candidates": [{"content": {"parts": [{"text": "こんにちは"}]}}]}])

        assert list(iter_text_fragments(body)) == ["こんにちは"]

    def test_empty_body_yields_nothing(self):
        assert list(iter_text_fragments("")) == []
        assert list(iter_text_fragments(None)) == []

    def test_structured_single_response_is_scanned_too(self):
        body = json.dumps({"candidates": [{"content": {"parts": [{"text": "Answer."}]}}]})

        assert list(iter_text_fragments(body)) == ["Answer."]


class TestReassembler:
    def test_flush_cuts_after_last_sentence_terminator(self):
        reassembler = Reassembler(threshold=10)

        assert reassembler.feed("One. Two") is None
        assert reassembler.feed(" three") == "One."
        assert reassembler.buffer.pending_tail == " Two three"

    def test_flush_without_boundary_takes_whole_buffer(self):
        reassembler = Reassembler(threshold=5)

        assert reassembler.feed("abcdefgh") == "abcdefgh"
        assert reassembler.buffer.pending_tail == ""

    def test_newline_counts_as_boundary(self):
        reassembler = Reassembler(threshold=5)

        assert reassembler.feed("line\nrest") == "line\n"

    def test_finish_flushes_remainder(self):
        reassembler = Reassembler(threshold=100)
        reassembler.feed("short")

        assert reassembler.finish() == "short"
        assert reassembler.finish() is None

    def test_empty_fragment_is_ignored(self):
        reassembler = Reassembler(threshold=1)

        assert reassembler.feed("") is None


class TestReassemble:
    def test_small_chunks_with_threshold_three(self):
        edits = list(reassemble(["ab", "c.", "de"], threshold=3))

        assert edits == ["abc.", "abc.de"]
        assert edits[-1] == "abc.de"

    def test_edits_grow_monotonically_and_are_prefixes(self):
        fragments = ["The first sentence is here. ", "Second one follows", " and ends now. Third", " trails off"]

        edits = list(reassemble(fragments, threshold=10))

        assert edits[-1] == "".join(fragments)
        for previous, current in zip(edits, edits[1:]):
            assert len(current) >= len(previous)
            assert current.startswith(previous)

    def test_no_fragments_no_edits(self):
        assert list(reassemble([], threshold=3)) == []

    def test_generator_is_lazy(self):
        consumed = []

        def fragments():
            for fragment in ["Hello. ", "World."]:
                consumed.append(fragment)
                yield fragment

        edits = reassemble(fragments(), threshold=3)
        assert consumed == []
        assert next(edits) == "Hello."
        assert consumed == ["Hello. "]


class TestExtractErrorReason:
    def test_block_reason(self):
        body = json.dumps([{"promptFeedback": {"blockReason": "SAFETY"}}])

        assert extract_error_reason(body) == "blocked: SAFETY"

    def test_non_stop_finish_reason(self):
        body = json.dumps([{"candidates": [{"finishReason": "SAFETY", "index": 0}]}])

        assert extract_error_reason(body) == "finish reason: SAFETY"

    def test_upstream_error_message(self):
        body = json.dumps({"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}})

        assert extract_error_reason(body) == "API key not valid"

    def test_truncated_body_falls_back_to_pattern(self):
        body = '[{"promptFeedback": {"blockReason": "OTHER"'

        assert extract_error_reason(body) == "blocked: OTHER"

    def test_nothing_to_report(self):
        assert extract_error_reason("not json at all") is None
        assert extract_error_reason("") is None


class TestPublishStream:
    def test_publishes_each_flush_in_order(self):
        publish = Mock()
        body = _chunked_body("ab", "c.", "de")

        result = publish_stream(body, publish, threshold=3, error_text="error")

        assert [call.args[0] for call in publish.call_args_list] == ["abc.", "abc.de"]
        assert result.text == "abc.de"
        assert result.edits == 2
        assert result.complete is True

    def test_spaces_edits_by_interval(self):
        publish = Mock()
        sleep = Mock()
        body = _chunked_body("One. ", "Two. ", "Three.")

        result = publish_stream(body, publish, threshold=3, error_text="error", edit_interval_seconds=1.0, sleep=sleep)

        assert result.edits == 3
        assert sleep.call_count == 2
        for call in sleep.call_args_list:
            assert 0 < call.args[0] <= 1.0

    def test_no_sleep_without_interval(self):
        sleep = Mock()

        publish_stream(_chunked_body("One. ", "Two. "), Mock(), threshold=3, error_text="error", sleep=sleep)

        sleep.assert_not_called()

    def test_empty_response_publishes_error_with_reason(self):
        publish = Mock()
        body = json.dumps([{"promptFeedback": {"blockReason": "SAFETY"}}])

        result = publish_stream(body, publish, threshold=3, error_text="Sorry.")

        publish.assert_called_once_with("Sorry. (blocked: SAFETY)")
        assert result.complete is False

    def test_unparseable_response_publishes_plain_error(self):
        publish = Mock()

        result = publish_stream("<html>502</html>", publish, threshold=3, error_text="Sorry.")

        publish.assert_called_once_with("Sorry.")
        assert result.text == "Sorry."

    def test_stops_editing_once_capped_text_stops_changing(self):
        publish = Mock()
        sleep = Mock()
        body = _chunked_body("One. ", "Two. ", "Three. ", "Four.")

        result = publish_stream(
            body,
            publish,
            threshold=3,
            error_text="error",
            edit_interval_seconds=1.0,
            max_length=6,
            sleep=sleep,
        )

        assert [call.args[0] for call in publish.call_args_list] == ["One.", "One. Two."]
        assert result.edits == 2
        assert result.text == "One. Two. Three. Four."
        assert result.complete is True
        assert sleep.call_count == 1

    def test_short_answer_unaffected_by_cap(self):
        publish = Mock()

        result = publish_stream(_chunked_body("ab", "c.", "de"), publish, threshold=3, error_text="e", max_length=100)

        assert [call.args[0] for call in publish.call_args_list] == ["abc.", "abc.de"]
        assert result.edits == 2
