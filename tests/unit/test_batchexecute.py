"""Tests for the positional RPC codec."""

from __future__ import annotations

import json
from typing import Any

import pytest

from ai_models_bridge.errors import AIModelError, ErrorKind
from ai_models_bridge.streaming.batchexecute import (
    StreamGenerateParser,
    build_batchexecute_form,
    build_generate_form,
    decode_rpc_line,
    parse_batchexecute_response,
    parse_generate_payload,
    splice_images,
    value_at,
)


def generate_payload(
    text: str | None = "Hello",
    ids: tuple[str, str, str] = ("c_1", "r_1", "rc_1"),
    title: str | None = None,
) -> list[Any]:
    payload: list[Any] = [None] * 11
    payload[1] = [ids[0], ids[1]]
    payload[4] = [[ids[2], [text] if text is not None else None]]
    if title is not None:
        payload[10] = [title]
    return payload


def frame_line(payload: Any, rpc_id: str | None = None) -> str:
    return json.dumps([["wrb.fr", rpc_id, json.dumps(payload)]])


class TestValueAt:
    """Test positional lookups."""

    def test_present(self) -> None:
        """Test a nested value is returned."""
        assert value_at([[None, ["x"]]], 0, 1, 0, expected=str) == "x"

    def test_absent_is_none(self) -> None:
        """Test out-of-range and null hops return None."""
        assert value_at([], 3, expected=str) is None
        assert value_at([None], 0, 1, expected=str) is None

    def test_wrong_type_fails_closed(self) -> None:
        """Test an unexpected type raises instead of guessing."""
        with pytest.raises(AIModelError) as exc_info:
            value_at([{"a": 1}], 0, 0, expected=str)
        assert exc_info.value.kind is ErrorKind.RESPONSE_PARSING_ERROR

        with pytest.raises(AIModelError):
            value_at([[123]], 0, 0, expected=str)


class TestDecodeRpcLine:
    """Test envelope detection."""

    def test_ignores_noise(self) -> None:
        """Test XSSI prefix, length lines and other frames are skipped."""
        assert decode_rpc_line(")]}'") is None
        assert decode_rpc_line("123") is None
        assert decode_rpc_line('[["di",59],["af.httprm",58,"-1",1]]') is None
        assert decode_rpc_line("") is None

    def test_returns_envelope(self) -> None:
        """Test a wrb.fr line yields its envelope."""
        assert decode_rpc_line('[["wrb.fr","MaZiqc","[]"]]') == ["wrb.fr", "MaZiqc", "[]"]

    def test_broken_marker_line_raises(self) -> None:
        """Test a truncated wrb.fr line is a parsing error."""
        with pytest.raises(AIModelError) as exc_info:
            decode_rpc_line('[["wrb.fr",null,"[1,')
        assert exc_info.value.kind is ErrorKind.RESPONSE_PARSING_ERROR


class TestParseGeneratePayload:
    """Test StreamGenerate field extraction."""

    def test_extracts_text_ids_and_title(self) -> None:
        """Test all fields are read from their positions."""
        frame = parse_generate_payload(generate_payload("Hi there", title="Greetings\n"))
        assert frame.text == "Hi there"
        assert frame.ids == ("c_1", "r_1", "rc_1")
        assert frame.title == "Greetings"

    def test_missing_ids(self) -> None:
        """Test ids are None until all three arrive."""
        payload = generate_payload()
        payload[1] = None
        assert parse_generate_payload(payload).ids is None

    def test_non_array_payload(self) -> None:
        """Test a non-array payload raises."""
        with pytest.raises(AIModelError):
            parse_generate_payload({"text": "hi"})

    def test_splice_images(self) -> None:
        """Test image placeholders become markdown links."""
        image = [
            [["https://img/1.png"], None, None, None, "a cat"],
            [["https://source/cat"]],
            "[Image of a cat]",
        ]
        text = splice_images("Look: [Image of a cat]", [image])
        assert text == "Look: [![a cat](https://img/1.png)](https://source/cat)"

    def test_bad_image_descriptor(self) -> None:
        """Test a malformed image descriptor raises."""
        with pytest.raises(AIModelError):
            splice_images("x", [["only-one"]])


class TestStreamGenerateParser:
    """Test incremental StreamGenerate scanning."""

    def test_frames_replace_text(self) -> None:
        """Test each frame carries the full answer so far."""
        body = "\n".join(
            [
                ")]}'",
                "",
                "120",
                frame_line(generate_payload("Hel")),
                "58",
                frame_line(generate_payload("Hello", title="Chat title")),
                frame_line(generate_payload("Hello")),
            ]
        )
        parser = StreamGenerateParser()
        frames = parser.feed(body[:37]) + parser.feed(body[37:]) + parser.flush()

        assert [f.text for f in frames] == ["Hel", "Hello"]
        assert parser.title == "Chat title"
        assert parser.result() == ("Hello", ("c_1", "r_1", "rc_1"))

    def test_result_without_ids_fails(self) -> None:
        """Test result() fails closed without ids."""
        parser = StreamGenerateParser()
        parser.feed(")]}'\n")
        with pytest.raises(AIModelError) as exc_info:
            parser.result()
        assert exc_info.value.kind is ErrorKind.RESPONSE_PARSING_ERROR


class TestForms:
    """Test request body builders."""

    def test_generate_form(self) -> None:
        """Test the StreamGenerate form layout."""
        form = build_generate_form(
            "hi", ["c", "r", "rc"], "AT", "BL", image=("/upload/1", "cat.png")
        )
        request = json.loads(json.loads(form["f.req"])[1])
        assert request[0][0] == "hi"
        assert request[0][3] == [[["/upload/1", 1], "cat.png"]]
        assert request[2] == ["c", "r", "rc"]
        assert form["at"] == "AT"
        assert form["bl"] == "BL"
        assert len(form["_reqid"]) == 6

    def test_batchexecute_round_trip(self) -> None:
        """Test a batchexecute call and its response."""
        form = build_batchexecute_form("MaZiqc", [13, None, [0]], "AT")
        assert json.loads(form["f.req"])[0][0][0] == "MaZiqc"

        body = ")]}'\n\n25\n" + frame_line([["c_1", "Title"]], rpc_id="MaZiqc") + "\n"
        assert parse_batchexecute_response(body, "MaZiqc") == [["c_1", "Title"]]

    def test_batchexecute_missing_rpc(self) -> None:
        """Test a response without the requested rpc raises."""
        body = frame_line([], rpc_id="other")
        with pytest.raises(AIModelError):
            parse_batchexecute_response(body, "MaZiqc")
