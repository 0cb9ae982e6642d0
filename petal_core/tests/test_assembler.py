import pytest

from petal_core.domain.conversation import ConversationHistory
from petal_core.domain.exceptions import BackendUnavailable, StreamInterrupted
from petal_core.domain.models import ChatTurn, ChunkStyle, Participant, StreamChunk, TurnState
from petal_core.streaming.assembler import StreamAssembler, normalize_delta
from petal_core.tools.definitions import ToolCall


def _pending_turn(history):
    turn = ChatTurn(participant=Participant.ASSISTANT)
    history.append(turn)
    turn.transition(TurnState.PENDING)
    turn.pending = True
    return turn


def _cumulative(*payloads, final_last=True):
    chunks = [StreamChunk(payload=p, style=ChunkStyle.CUMULATIVE) for p in payloads]
    if final_last:
        chunks[-1].is_final = True
    return chunks


def test_normalize_delta_styles():
    assert normalize_delta(StreamChunk(payload="abc"), 10) == "abc"
    assert normalize_delta(StreamChunk(payload="Hi there", style=ChunkStyle.CUMULATIVE), 2) == " there"


def test_cumulative_chunks_become_deltas():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)
    updates = list(asm.consume(_cumulative("Hi", "Hi there", "Hi there!")))
    deltas = [u.delta_text for u in updates if u.delta_text]
    assert deltas == ["Hi", " there", "!"]
    assert "".join(deltas) == "Hi there!"
    asm.finish()
    assert turn.content == "Hi there!"
    assert turn.state == TurnState.FINALIZED


def test_delta_lengths_sum_to_content_length():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)
    chunks = [
        StreamChunk(payload="The "),
        StreamChunk(payload="The quick", style=ChunkStyle.CUMULATIVE),
        StreamChunk(payload=""),
        StreamChunk(payload=" brown fox"),
        StreamChunk(payload="The quick brown fox", style=ChunkStyle.CUMULATIVE),
        StreamChunk(payload=".", is_final=True),
    ]
    updates = list(asm.consume(chunks))
    asm.finish()
    total = sum(len(u.delta_text) for u in updates if u.delta_text)
    assert turn.content == "The quick brown fox."
    assert total == len(turn.content)
    assert asm.previous_length == len(turn.content)


def test_lifecycle_pending_streaming_finalized():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)
    assert turn.pending
    asm.apply(StreamChunk(payload="a"))
    assert turn.state == TurnState.STREAMING
    assert not turn.pending
    asm.finish()
    assert turn.state == TurnState.FINALIZED


def test_chunks_after_final_are_ignored():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)
    list(asm.consume([StreamChunk(payload="done", is_final=True), StreamChunk(payload=" extra")]))
    asm.finish()
    assert turn.content == "done"


def test_tool_mode_replaces_content_once():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn, tool_mode=True)
    chunks = [
        StreamChunk(tool_call_name="petalFetchRemindersTool"),
        StreamChunk(payload=""),
        StreamChunk(payload="", tool_call=ToolCall(id="c1", name="petalFetchRemindersTool", arguments={"limit": 3})),
        StreamChunk(payload="", is_final=True),
    ]
    updates = list(asm.consume(chunks))
    assert turn.tool_call_name == "petalFetchRemindersTool"
    assert turn.content == ""
    assert all(u.turn.content == "" for u in updates)
    assert turn.state == TurnState.PENDING
    assert asm.pending_tool_call.arguments == {"limit": 3}
    asm.finish("1. Call mom")
    assert turn.content == "1. Call mom"
    assert turn.state == TurnState.FINALIZED


def test_tool_mode_uses_buffered_text_when_unresolved():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn, tool_mode=True)
    list(asm.consume([StreamChunk(payload="You have "), StreamChunk(payload="2 reminders", is_final=True)]))
    assert turn.content == ""
    asm.finish()
    assert turn.content == "You have 2 reminders"


def test_complete_with_single_response():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)
    update = asm.complete_with("Full answer")
    assert update.turn.content == "Full answer"
    assert turn.state == TurnState.FINALIZED
    assert not turn.pending


def test_failure_mid_stream_raises_stream_interrupted():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)

    def chunks():
        yield StreamChunk(payload="a")
        yield StreamChunk(payload="b")
        raise ConnectionError("reset by peer")

    with pytest.raises(StreamInterrupted) as exc:
        list(asm.consume(chunks()))
    assert exc.value.extra["delivered"] == 2
    assert turn.content == "ab"
    assert turn.state == TurnState.ERRORED


def test_failure_before_first_chunk_keeps_error_kind():
    history = ConversationHistory()
    turn = _pending_turn(history)
    asm = StreamAssembler(history, turn)

    def chunks():
        raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message="connection refused")
        yield  # pragma: no cover

    with pytest.raises(BackendUnavailable):
        list(asm.consume(chunks()))
    assert turn.state == TurnState.ERRORED
