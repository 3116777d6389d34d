from __future__ import annotations

from assistant_core.streaming import SSELineDecoder, ToolCallAccumulator, chunk_deltas, encode_sse


def test_lines_straddling_chunks_are_reassembled():
    decoder = SSELineDecoder()
    wire = 'data: {"choices": [{"delta": {"content": "Café ready"}}]}\n\n'.encode("utf-8") + encode_sse("[DONE]")
    # Split inside the JSON and inside the two-byte "é".
    cut_json = 12
    cut_char = wire.index("é".encode("utf-8")) + 1
    pieces = [wire[:cut_json], wire[cut_json:cut_char], wire[cut_char:]]

    payloads = [payload for piece in pieces for payload in decoder.feed(piece)]
    payloads.extend(decoder.flush())

    assert len(payloads) == 1
    assert chunk_deltas(payloads[0]) == ("Café ready", [])
    assert decoder.finished


def test_undecodable_lines_are_skipped():
    decoder = SSELineDecoder()
    payloads = list(decoder.feed(b"data: {not json}\n: keep-alive\ndata: {\"choices\": []}\n"))
    assert payloads == [{"choices": []}]


def test_three_fragments_accumulate_into_one_call():
    accumulator = ToolCallAccumulator()
    accumulator.add({"index": 0, "id": "call_1", "function": {"name": "create_client", "arguments": '{"na'}})
    accumulator.add({"index": 0, "function": {"arguments": 'me":"Jo'}})
    accumulator.add({"index": 0, "function": {"arguments": 'hn"}'}})

    [call] = accumulator.finalize()
    assert call.call_id == "call_1"
    assert call.function_name == "create_client"
    assert call.arguments == {"name": "John"}
    assert call.parse_error is None


def test_calls_are_ordered_by_index_and_bad_json_is_flagged():
    accumulator = ToolCallAccumulator()
    accumulator.add({"index": 1, "id": "call_b", "function": {"name": "list_clients", "arguments": "{}"}})
    accumulator.add({"index": 0, "id": "call_a", "function": {"name": "create_reminder", "arguments": '{"title": '}})

    first, second = accumulator.finalize()
    assert (first.index, second.index) == (0, 1)
    assert first.arguments is None
    assert first.parse_error.startswith("Malformed tool arguments")
    assert second.arguments == {}


def test_empty_accumulator_is_falsy():
    assert not ToolCallAccumulator()
