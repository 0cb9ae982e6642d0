import math

import numpy as np
import pytest

from petal_core.nlp.embedding import BagOfWordsEmbedding
from petal_core.nlp.exemplars import ExemplarStore
from petal_core.nlp.intent_gate import IntentGate, cosine_similarity


REMINDERS = {"petalFetchRemindersTool": ["Show me my reminders", "List my tasks for today"]}


def _gate(exemplars=REMINDERS, threshold=0.75):
    emb = BagOfWordsEmbedding.from_exemplars(exemplars)
    return IntentGate(ExemplarStore(emb, exemplars), emb, threshold=threshold)


def test_cosine_self_similarity_is_one():
    for vec in ([1.0, 2.0, 3.0], [0.5, -4.0], [1e-3, 7.0, 0.0, 2.0]):
        assert math.isclose(cosine_similarity(vec, vec), 1.0, rel_tol=1e-9)


def test_cosine_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
    assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0
    assert cosine_similarity(np.zeros(3), np.zeros(3)) == 0.0


def test_cosine_rejects_shape_mismatch():
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_reminders_scenario():
    gate = _gate()
    assert gate.should_use_tool("Show me my reminders please", "petalFetchRemindersTool") is True
    assert gate.should_use_tool("What's 2+2?", "petalFetchRemindersTool") is False
    assert gate.should_use_any_tool("Show me my reminders please") is True
    assert gate.should_use_any_tool("What's 2+2?") is False


def test_unknown_tool_fails_closed():
    gate = _gate()
    assert gate.should_use_tool("Show me my reminders", "noSuchTool") is False
    assert gate.similarity("Show me my reminders", "noSuchTool") is None


def test_embedding_failure_fails_closed():
    class Broken:
        name = "broken"

        def embed(self, text):
            raise RuntimeError("embedding service down")

    gate = IntentGate(ExemplarStore(Broken(), REMINDERS), Broken(), threshold=0.1)
    assert gate.should_use_tool("Show me my reminders", "petalFetchRemindersTool") is False
    assert gate.should_use_any_tool("Show me my reminders") is False


def test_threshold_is_monotonic_without_hysteresis():
    gate = _gate()
    message = "Show me my reminders please"
    sim = gate.similarity(message, "petalFetchRemindersTool")
    results = []
    for threshold in np.linspace(1.0, -1.0, 41):
        gate.threshold = float(threshold)
        results.append(gate.should_use_tool(message, "petalFetchRemindersTool"))
    flips = sum(1 for a, b in zip(results, results[1:]) if a != b)
    assert results[0] is False
    assert results[-1] is True
    assert flips == 1
    gate.threshold = sim
    assert gate.should_use_tool(message, "petalFetchRemindersTool") is True


def test_matching_tool_returns_first_match():
    exemplars = {
        "petalFetchRemindersTool": ["Show me my reminders"],
        "petalFetchCanvasGradesTool": ["Show me my grades"],
    }
    gate = _gate(exemplars, threshold=0.9)
    assert gate.matching_tool("show me my grades") == "petalFetchCanvasGradesTool"
    assert gate.matching_tool("tell me a joke") is None


def test_one_failing_prototype_does_not_hide_other_tools():
    exemplars = {"aTool": ["weather forecast today"], "bTool": ["Show me my reminders"]}
    base = BagOfWordsEmbedding.from_exemplars(exemplars)

    class FlakyEmbedding:
        name = "flaky"

        def embed(self, text):
            if "weather" in text:
                raise RuntimeError("embedding service timed out")
            return base.embed(text)

    emb = FlakyEmbedding()
    gate = IntentGate(ExemplarStore(emb, exemplars), emb, threshold=0.75)
    assert gate.should_use_tool("Show me my reminders please", "bTool") is True
    assert gate.should_use_tool("Show me my reminders please", "aTool") is False
    assert gate.matching_tool("Show me my reminders please") == "bTool"
    assert gate.should_use_any_tool("Show me my reminders please") is True
