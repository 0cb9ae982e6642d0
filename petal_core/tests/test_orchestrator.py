import pytest

from petal_core.agents.orchestrator import Orchestrator
from petal_core.backends import BackendKind
from petal_core.domain.exceptions import BackendUnavailable, StreamInterrupted, ValidationError
from petal_core.domain.models import ChunkStyle, Participant, StreamChunk, TurnState
from petal_core.nlp.embedding import BagOfWordsEmbedding
from petal_core.nlp.exemplars import ExemplarStore
from petal_core.nlp.intent_gate import IntentGate
from petal_core.tools.definitions import ToolCall, ToolDef
from petal_core.tools.executor import ToolExecutor


REMINDERS = {"petalFetchRemindersTool": ["Show me my reminders", "List my tasks for today"]}


class FakeBackend:
    def __init__(self, chunks=None, text="", kind=BackendKind.CLOUD_API, model="fake-model", fail_at=None, error=None):
        self.kind = kind
        self.model = model
        self._chunks = list(chunks or [])
        self._text = text
        self._fail_at = fail_at
        self._error = error
        self.calls = []

    @property
    def name(self):
        return f"fake:{self.model}"

    def complete(self, history, tools=None):
        self.calls.append(("complete", list(history), tools))
        if self._error is not None:
            raise self._error
        return self._text

    def stream(self, history, tools=None):
        self.calls.append(("stream", list(history), tools))
        return self._iterate()

    def _iterate(self):
        for i, chunk in enumerate(self._chunks):
            if self._fail_at is not None and i == self._fail_at:
                raise self._error or BackendUnavailable(code="BACKEND_UNAVAILABLE", message="connection dropped")
            yield chunk


def _gate():
    emb = BagOfWordsEmbedding.from_exemplars(REMINDERS)
    return IntentGate(ExemplarStore(emb, REMINDERS), emb, threshold=0.75)


def _text_chunks(*parts):
    chunks = [StreamChunk(payload=p) for p in parts]
    chunks.append(StreamChunk(payload="", is_final=True))
    return chunks


def test_streaming_send_finalizes_assistant_turn():
    orch = Orchestrator(FakeBackend(chunks=_text_chunks("Hel", "lo")))
    turn = orch.send("hi")
    assert turn is not None
    assert turn.content == "Hello"
    assert turn.state == TurnState.FINALIZED
    history = orch.history.snapshot()
    assert [t.participant for t in history] == [Participant.USER, Participant.ASSISTANT]
    assert all(t.state == TurnState.FINALIZED for t in history)
    assert not orch.busy
    assert not orch.has_error


def test_non_streaming_send_uses_complete():
    backend = FakeBackend(text="four")
    orch = Orchestrator(backend, system_prompt="You are Petal.")
    turn = orch.send("What's 2+2?", streaming=False)
    assert turn.content == "four"
    kind, context, tools = backend.calls[0]
    assert kind == "complete"
    assert tools is None
    assert context[0].participant == Participant.SYSTEM
    assert [t.content for t in context[1:]] == ["What's 2+2?"]


def test_updates_are_ordered_and_match_observers():
    orch = Orchestrator(FakeBackend(chunks=_text_chunks("a", "b")))
    observed = []
    orch.subscribe(observed.append)
    yielded = list(orch.send_iter("hi"))
    assert len(yielded) == len(observed)
    assert all(a is b for a, b in zip(yielded, observed))
    kinds = [u.kind for u in yielded]
    assert kinds[:3] == ["added", "added", "updated"]
    assert yielded[2].turn.state == TurnState.PENDING
    assert yielded[2].turn.pending is True
    deltas = [u.delta_text for u in yielded if u.delta_text]
    assert deltas == ["a", "b"]
    assert yielded[-1].turn.state == TurnState.FINALIZED


def test_mid_stream_failure_rolls_back_assistant_turn():
    chunks = _text_chunks("a", "b", "c", "d")
    orch = Orchestrator(FakeBackend(chunks=chunks, fail_at=2))
    updates = list(orch.send_iter("Tell me a story"))
    history = orch.history.snapshot()
    assert [t.participant for t in history] == [Participant.USER]
    assert history[0].content == "Tell me a story"
    assert isinstance(orch.error, StreamInterrupted)
    assert orch.error.extra["delivered"] == 2
    assert [u.kind for u in updates[-2:]] == ["removed", "error"]
    assert updates[-1].error is orch.error


def test_failure_before_first_chunk_keeps_error_kind():
    backend = FakeBackend(text="", error=BackendUnavailable(code="BACKEND_UNAVAILABLE", message="down"))
    orch = Orchestrator(backend)
    assert orch.send("hi", streaming=False) is None
    assert isinstance(orch.error, BackendUnavailable)
    assert not isinstance(orch.error, StreamInterrupted)
    assert len(orch.history) == 1


def test_unexpected_exception_is_wrapped():
    backend = FakeBackend(error=RuntimeError("boom"))
    orch = Orchestrator(backend)
    assert orch.send("hi", streaming=False) is None
    assert orch.error.code == "GENERATION_FAILED"
    orch.stop()
    assert not orch.has_error


def test_tool_mode_replaces_content_with_tool_result():
    call = ToolCall(id="call_1", name="petalFetchRemindersTool", arguments={"status": "pending"})
    chunks = [
        StreamChunk(tool_call_name="petalFetchRemindersTool"),
        StreamChunk(payload="Let me check", style=ChunkStyle.DELTA),
        StreamChunk(tool_call_name="petalFetchRemindersTool", tool_call=call),
        StreamChunk(payload="", is_final=True),
    ]
    backend = FakeBackend(chunks=chunks)
    received = []

    def fetch_reminders(args):
        received.append(args)
        return "You have 2 reminders"

    executor = ToolExecutor()
    executor.register(ToolDef(name="petalFetchRemindersTool", description="Fetch reminders"), fetch_reminders)
    orch = Orchestrator(backend, gate=_gate(), tool_executor=executor)

    updates = list(orch.send_iter("Show me my reminders please", streaming=False))
    turn = orch.history.last()
    assert turn.content == "You have 2 reminders"
    assert turn.tool_call_name == "petalFetchRemindersTool"
    assert turn.meta["gate_tool_id"] == "petalFetchRemindersTool"
    assert received == [{"status": "pending"}]
    assert backend.calls[0][0] == "stream"
    assert [t.name for t in backend.calls[0][2]] == ["petalFetchRemindersTool"]
    # 工具模式下正文只替换一次
    assert [u.turn.content for u in updates if u.kind == "updated" and u.turn.content] == ["You have 2 reminders"]
    assert not orch.is_processing_tool


def test_tool_failure_is_reported_as_text():
    call = ToolCall(id="call_1", name="petalFetchRemindersTool")
    chunks = [StreamChunk(tool_call_name=call.name, tool_call=call), StreamChunk(is_final=True)]

    def broken(args):
        raise PermissionError("Reminders access denied")

    executor = ToolExecutor()
    executor.register(ToolDef(name="petalFetchRemindersTool", description="Fetch reminders"), broken)
    orch = Orchestrator(FakeBackend(chunks=chunks), gate=_gate(), tool_executor=executor)
    turn = orch.send("Show me my reminders please")
    assert turn.state == TurnState.FINALIZED
    assert turn.content.startswith("Tool error:")
    assert "Reminders access denied" in turn.content
    assert not orch.has_error


def test_message_below_threshold_skips_tools():
    backend = FakeBackend(chunks=_text_chunks("4"))
    executor = ToolExecutor()
    executor.register(ToolDef(name="petalFetchRemindersTool", description="Fetch reminders"), lambda args: "x")
    orch = Orchestrator(backend, gate=_gate(), tool_executor=executor)
    turn = orch.send("What's 2+2?")
    assert turn.content == "4"
    assert backend.calls[0][2] is None
    assert "gate_tool_id" not in turn.meta


def test_concurrent_send_is_rejected():
    orch = Orchestrator(FakeBackend(chunks=_text_chunks("a")))
    first = orch.send_iter("one")
    next(first)
    assert orch.busy
    with pytest.raises(ValidationError) as exc_info:
        next(orch.send_iter("two"))
    assert exc_info.value.code == "CONVERSATION_BUSY"
    first.close()
    assert not orch.busy
    assert orch.send("three").content == "a"


def test_closing_iterator_early_removes_pending_turn():
    orch = Orchestrator(FakeBackend(chunks=_text_chunks("a", "b")))
    it = orch.send_iter("hi")
    for update in it:
        if update.kind == "updated":
            break
    it.close()
    assert [t.participant for t in orch.history.snapshot()] == [Participant.USER]
    assert not orch.has_error


def test_context_window_is_trimmed():
    backend = FakeBackend(text="ok")
    orch = Orchestrator(backend, max_context_messages=2)
    for text in ("one", "two", "three"):
        orch.send(text, streaming=False)
    _, context, _ = backend.calls[-1]
    assert [t.content for t in context] == ["ok", "three"]


def test_switch_backend_clears_history():
    created = []

    def factory(kind, model):
        backend = FakeBackend(text="from new", kind=kind, model=model or "default")
        created.append(backend)
        return backend

    orch = Orchestrator(FakeBackend(text="x"), backend_factory=factory)
    orch.send("hi", streaming=False)
    assert len(orch.history) == 2

    orch.switch_backend("local_server")
    assert len(orch.history) == 0
    assert orch.backend.kind == BackendKind.LOCAL_SERVER

    orch.send("hi", streaming=False)
    orch.select_model("mistral")
    assert len(orch.history) == 0
    assert orch.backend.model == "mistral"
    assert orch.backend.kind == BackendKind.LOCAL_SERVER
    assert len(created) == 2

    replacement = FakeBackend(text="direct")
    assert orch.switch_backend(replacement) is replacement


def test_gate_runs_after_turns_are_appended():
    seen = []

    class RecordingGate:
        def matching_tool(self, text):
            seen.extend((t.participant, t.state) for t in orch.history.snapshot())
            return None

    orch = Orchestrator(FakeBackend(chunks=_text_chunks("ok")), gate=RecordingGate())
    orch.send("hi")
    assert seen == [
        (Participant.USER, TurnState.FINALIZED),
        (Participant.ASSISTANT, TurnState.PENDING),
    ]


def test_tool_gate_decision_is_published_after_pending_turn():
    call = ToolCall(id="call_1", name="petalFetchRemindersTool")
    chunks = [StreamChunk(tool_call_name=call.name, tool_call=call), StreamChunk(is_final=True)]
    executor = ToolExecutor()
    executor.register(ToolDef(name="petalFetchRemindersTool", description="Fetch reminders"), lambda args: "done")
    orch = Orchestrator(FakeBackend(chunks=chunks), gate=_gate(), tool_executor=executor)
    updates = list(orch.send_iter("Show me my reminders please"))
    assert "gate_tool_id" not in updates[2].turn.meta
    assert updates[3].kind == "updated"
    assert updates[3].turn.meta["gate_tool_id"] == "petalFetchRemindersTool"


def test_reset_during_stream_abandons_send_without_error():
    class ResettingBackend(FakeBackend):
        def _iterate(self):
            yield StreamChunk(payload="Hel")
            orch.start_new_chat()
            yield StreamChunk(payload="lo")
            yield StreamChunk(payload="", is_final=True)

    orch = Orchestrator(ResettingBackend())
    updates = list(orch.send_iter("hi"))
    assert orch.error is None
    assert not orch.has_error
    assert len(orch.history) == 0
    assert "error" not in [u.kind for u in updates]
    assert not orch.busy
