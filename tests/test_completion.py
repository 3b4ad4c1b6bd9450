import asyncio

import pytest

from guidance.dsl.models import StepDescriptor
from interactive.completion import CompletionTracker, unique_id_from_attributes
from interactive.config import GuideConfig
from interactive.errors import StepConsistencyError
from tests.fakes import FakeDocument, h


def _control(**attrs):
    base = {"class": "interactive", "data-requirements": "", "data-targetaction": "highlight", "data-reftarget": "a"}
    base.update(attrs)
    return h("li", base)


def _doc() -> FakeDocument:
    return FakeDocument(
        h(
            "body",
            {},
            h("nav", {}, _control(**{"data-step-id": "outside"})),
            h(
                "main",
                {"id": "content"},
                _control(**{"data-step-id": "1"}),
                _control(**{"data-step-id": "1", "data-button-type": "show"}),
                _control(**{"data-section-id": "intro", "data-targetaction": "sequence"}),
                _control(),
            ),
        )
    )


def test_unique_id_prefers_section():
    assert unique_id_from_attributes({"data-section-id": "a", "data-step-id": "b"}) == "section-a"
    assert unique_id_from_attributes({"data-step-id": " b "}) == "step-b"
    with pytest.raises(StepConsistencyError, match="missing required unique step ID"):
        unique_id_from_attributes({"data-reftarget": "x", "data-step-id": "  "})


def test_groups_controls_and_skips_id_less_ones(caplog):
    tracker = CompletionTracker(_doc(), GuideConfig(content_root_selector="#content"))
    groups = asyncio.run(tracker.group_controls())
    assert sorted(groups) == ["section-intro", "step-1"]
    assert len(groups["step-1"]) == 2
    assert "Skipping control without step id" in caplog.text


def test_content_root_missing_falls_back_to_document():
    tracker = CompletionTracker(_doc(), GuideConfig(content_root_selector="#elsewhere"))
    assert "step-outside" in asyncio.run(tracker.group_controls())


def test_mark_completed_marks_whole_group_and_dispatches_event():
    doc = _doc()
    tracker = CompletionTracker(doc, GuideConfig())
    step = StepDescriptor(target_action="highlight", ref_target="a", step_id="1")
    controls = asyncio.run(tracker.mark_completed(step))

    assert len(controls) == 2
    assert all("completed" in c.classes and c.attrs["data-completed"] == "true" for c in controls)
    assert doc.settles == 1
    assert doc.completion_events == [(controls[0], "completed")]

    asyncio.run(tracker.clear_completed("step-1"))
    assert not any("completed" in c.classes for c in controls)


def test_mark_completed_for_unknown_step_is_a_consistency_error(caplog):
    tracker = CompletionTracker(_doc(), GuideConfig())
    step = StepDescriptor(target_action="highlight", ref_target="a", step_id="ghost")
    with pytest.raises(StepConsistencyError) as excinfo:
        asyncio.run(tracker.mark_completed(step))
    assert excinfo.value.details["unique_id"] == "step-ghost"
    assert "step-1" in excinfo.value.details["available"]
    assert "No step found with unique id step-ghost" in caplog.text


def test_clearing_an_unknown_group_is_quiet():
    assert asyncio.run(CompletionTracker(_doc(), GuideConfig()).clear_completed("step-nope")) == []
