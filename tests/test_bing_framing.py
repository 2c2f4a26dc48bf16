"""Tests for chat hub record framing."""

import json

import pytest

from chatrelay.backends.bing.framing import DELIMITER, RecordDecoder, serialize, split_records


class TestSerialize:
    """Tests for serialize."""

    def test_terminated_by_delimiter(self):
        raw = serialize({"protocol": "json", "version": 1})
        assert raw.endswith(DELIMITER)
        assert raw.count(DELIMITER) == 1
        assert json.loads(raw[:-1]) == {"protocol": "json", "version": 1}


class TestSplitRecords:
    """Tests for split_records."""

    def test_multiple_records(self):
        raw = serialize({"type": 1}) + serialize({"type": 2})
        assert split_records(raw) == [{"type": 1}, {"type": 2}]

    def test_blank_fragments_discarded(self):
        assert split_records("{}" + DELIMITER + "  " + DELIMITER) == [{}]
        assert split_records("") == []

    def test_malformed_fragment_raises(self):
        with pytest.raises(json.JSONDecodeError):
            split_records("{oops" + DELIMITER)


class TestRecordDecoder:
    """Tests for incremental decoding."""

    def test_complete_records(self):
        decoder = RecordDecoder()
        assert decoder.feed(serialize({"type": 6}) + serialize({"type": 1})) == [{"type": 6}, {"type": 1}]
        assert decoder.buffer == ""

    def test_partial_record_buffered(self):
        """A record split across messages should be returned once complete."""
        decoder = RecordDecoder()
        raw = serialize({"type": 2, "item": {"x": 1}})

        assert decoder.feed(raw[:10]) == []
        assert decoder.buffer == raw[:10]
        assert decoder.feed(raw[10:]) == [{"type": 2, "item": {"x": 1}}]

    def test_bytes_accepted(self):
        decoder = RecordDecoder()
        assert decoder.feed(serialize({"type": 3}).encode("utf-8")) == [{"type": 3}]

    def test_empty_message(self):
        assert RecordDecoder().feed("") == []
