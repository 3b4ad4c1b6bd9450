import json

from interactive.state import StepStateStore, StepStatus
from interactive.structured_logging import StepEventLog, prepare_log_paths


def test_state_changes_are_written_as_json_lines(tmp_path):
    store = StepStateStore()
    paths = prepare_log_paths("run-7", tmp_path / "run-7")
    event_log = StepEventLog("run-7", paths).attach(store.channel)

    store.transition("step-1", StepStatus.RUNNING)
    store.transition("step-1", StepStatus.ERROR, error="No buttons found", current_index=0)
    event_log.close()
    store.transition("step-1", StepStatus.IDLE)

    lines = [json.loads(line) for line in paths.events.read_text(encoding="utf-8").splitlines()]
    assert [line["seq"] for line in lines] == [1, 2]
    assert lines[0]["previous"] == "idle"
    assert lines[0]["status"] == "running"
    assert lines[1]["error"] == "No buttons found"
    assert lines[1]["current_index"] == 0
    assert {line["run_id"] for line in lines} == {"run-7"}


def test_close_is_idempotent(tmp_path):
    event_log = StepEventLog("r", prepare_log_paths("r", tmp_path))
    event_log.close()
    event_log.close()
