import os
import tempfile

import pytest

from petal_core.config.exemplars import DEFAULT_EXEMPLARS, load_exemplars
from petal_core.domain.exceptions import ValidationError
from petal_core.prompts import load_system_prompt


def _write(content):
    fd, path = tempfile.mkstemp(suffix=".yaml")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def test_default_exemplars_are_copied():
    exemplars = load_exemplars()
    assert set(exemplars) == set(DEFAULT_EXEMPLARS)
    exemplars["petalNotesTool"].append("changed")
    assert "changed" not in DEFAULT_EXEMPLARS["petalNotesTool"]


def test_load_exemplars_from_yaml():
    path = _write(
        "petalFetchRemindersTool:\n"
        "  - Show me my reminders\n"
        "  - List my tasks for today\n"
    )
    try:
        assert load_exemplars(path) == {
            "petalFetchRemindersTool": ["Show me my reminders", "List my tasks for today"]
        }
    finally:
        os.remove(path)


@pytest.mark.parametrize("content", ["- just\n- a list\n", "petalNotesTool: not-a-list\n", "a: [1, 2]\n"])
def test_load_exemplars_rejects_bad_shapes(content):
    path = _write(content)
    try:
        with pytest.raises(ValidationError) as exc_info:
            load_exemplars(path)
        assert exc_info.value.code == "EXEMPLAR_FILE_ERROR"
    finally:
        os.remove(path)


def test_load_exemplars_missing_file():
    with pytest.raises(ValidationError):
        load_exemplars("/nonexistent/petal-exemplars.yaml")


def test_system_prompt_loader():
    assert load_system_prompt().strip()
    assert load_system_prompt(path="/nonexistent/prompt.md") == ""
