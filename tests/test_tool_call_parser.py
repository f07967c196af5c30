"""Tests for tool call decoding."""

from __future__ import annotations

from mcplink.orchestration.tool_call_parser import (
    decode_tool_call,
    extract_tool_calls,
    find_json_object_end,
    normalize_tool_call_text,
    try_parse_json_block,
)


def test_decode_plain_json_span() -> None:
    call = decode_tool_call('{"name": "search", "arguments": {"q": "x"}}', call_id="call_7")

    assert call is not None
    assert call.id == "call_7"
    assert call.name == "search"
    assert dict(call.arguments) == {"q": "x"}


def test_decode_unwraps_tag_and_fence() -> None:
    tagged = decode_tool_call('<tool_call>\n{"name": "a", "arguments": {}}\n</tool_call>', call_id="c")
    fenced = decode_tool_call('```json\n{"name": "b", "arguments": {"n": 1}}\n```', call_id="c")

    assert tagged is not None and tagged.name == "a"
    assert fenced is not None and fenced.name == "b"
    assert dict(fenced.arguments) == {"n": 1}


def test_decode_normalizes_typographic_quotes() -> None:
    span = "{“name”: “weather”, “arguments”: {“city”: “Oslo”}}"

    call = decode_tool_call(span, call_id="call_1")

    assert call is not None
    assert call.name == "weather"
    assert dict(call.arguments) == {"city": "Oslo"}


def test_decode_full_width_punctuation() -> None:
    span = '｛"name"： "ping"， "arguments"： ｛｝｝'

    call = decode_tool_call(span, call_id="call_1")

    assert call is not None
    assert call.name == "ping"


def test_decode_single_quoted_json() -> None:
    call = decode_tool_call("{'name': 'lookup', 'arguments': {'id': 3}}", call_id="call_1")

    assert call is not None
    assert call.name == "lookup"
    assert dict(call.arguments) == {"id": 3}


def test_decode_accepts_parameters_and_string_arguments() -> None:
    with_parameters = decode_tool_call('{"name": "a", "parameters": {"k": "v"}}', call_id="1")
    stringly = decode_tool_call('{"name": "b", "arguments": "{\\"k\\": 2}"}', call_id="2")

    assert with_parameters is not None and dict(with_parameters.arguments) == {"k": "v"}
    assert stringly is not None and dict(stringly.arguments) == {"k": 2}


def test_decode_failures_return_none() -> None:
    assert decode_tool_call("", call_id="1") is None
    assert decode_tool_call("not json at all", call_id="1") is None
    assert decode_tool_call('{"arguments": {}}', call_id="1") is None
    assert decode_tool_call('{"name": 42}', call_id="1") is None
    assert decode_tool_call('{"name": "a", "arguments": [1, 2]}', call_id="1") is None


def test_decode_tolerates_trailing_prose() -> None:
    call = decode_tool_call('{"name": "a", "arguments": {}} and then I wait', call_id="1")

    assert call is not None and call.name == "a"


def test_extract_tool_calls_in_document_order() -> None:
    text = (
        "First I search.\n"
        '<tool_call>{"name": "search", "arguments": {"q": "x"}}</tool_call>\n'
        "Then:\n"
        '{"name": "fetch", "arguments": {"id": 1}}\n'
    )

    calls = extract_tool_calls(text)

    assert [call.name for call in calls] == ["search", "fetch"]
    assert [call.id for call in calls] == ["call_1", "call_2"]


def test_extract_tool_calls_skips_undecodable_spans() -> None:
    text = '<tool_call>{broken</tool_call>\n```json\n{"name": "ok", "arguments": {}}\n```'

    calls = extract_tool_calls(text, start_index=5)

    assert [(call.id, call.name) for call in calls] == [("call_5", "ok")]


def test_find_json_object_end_ignores_braces_in_strings() -> None:
    text = '{"a": "}{", "b": {"c": 1}} tail'

    end = find_json_object_end(text)

    assert end is not None
    assert text[:end] == '{"a": "}{", "b": {"c": 1}}'
    assert find_json_object_end('{"open": true') is None


def test_helpers() -> None:
    assert normalize_tool_call_text("“x” ") == '"x" '
    assert try_parse_json_block('{"a": 1}') == {"a": 1}
    assert try_parse_json_block("[1]") is None
    assert try_parse_json_block("nope") is None
