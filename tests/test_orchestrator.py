import asyncio

import pytest

from guidance.dsl.models import ActionMode, StepDescriptor, TargetAction
from interactive.config import GuideConfig
from interactive.context_provider import StaticContextProvider
from interactive.errors import SequenceResolutionError, StepConsistencyError
from interactive.runtime import build_runtime
from interactive.state import StepStatus
from tests.fakes import FakeDocument, h


def _control(tag="li", **attrs):
    base = {"class": "interactive", "data-requirements": ""}
    base.update({key.replace("_", "-"): value for key, value in attrs.items()})
    return h(tag, base)


def _datasource_page(*children) -> FakeDocument:
    children = children or (
        _control(data_targetaction="highlight", data_reftarget="a.nav-connections", data_step_id="c1"),
        _control(
            data_targetaction="formfill",
            data_reftarget="#ds-name",
            data_targetvalue="prometheus",
            data_step_id="c2",
        ),
        _control(data_targetaction="button", data_reftarget="Save & test", data_step_id="c3"),
    )
    return FakeDocument(
        h(
            "body",
            {},
            h("a", {"class": "nav-connections", "href": "/connections"}, "Connections"),
            h("input", {"id": "ds-name", "type": "text"}),
            h("button", {"id": "save"}, "Save & test"),
            h(
                "div",
                {
                    "id": "create-datasource",
                    "class": "interactive",
                    "data-targetaction": "sequence",
                    "data-reftarget": "#create-datasource",
                    "data-section-id": "create-datasource",
                    "data-requirements": "",
                },
                *children,
            ),
            _control(data_targetaction="highlight", data_reftarget="a.nav-connections", data_step_id="single"),
        )
    )


def _sequence_step(ref_target="#create-datasource") -> StepDescriptor:
    return StepDescriptor(target_action="sequence", ref_target=ref_target, section_id="create-datasource")


def _runtime(doc, provider=None, **config):
    return build_runtime(dom=doc, config=GuideConfig(**config), provider=provider or StaticContextProvider())


def _record(monkeypatch, runtime):
    """Capture executor calls and pauses in one ordered list without sleeping."""

    calls = []
    original = runtime.executor.execute

    async def execute(action, locator, value=None, mode=ActionMode.DO):
        calls.append((TargetAction(action).value, ActionMode(mode).value))
        return await original(action, locator, value, mode)

    async def pause(delay_ms):
        calls.append(("pause", delay_ms))

    monkeypatch.setattr(runtime.executor, "execute", execute)
    monkeypatch.setattr(runtime.orchestrator, "_pause", pause)
    return calls


def test_sequence_runs_children_in_order_with_previews(monkeypatch):
    doc = _datasource_page()
    runtime = _runtime(doc)
    calls = _record(monkeypatch, runtime)

    outcome = asyncio.run(runtime.orchestrator.trigger(_sequence_step(), "do"))

    assert outcome.executed is True
    assert outcome.status is StepStatus.COMPLETED
    assert calls == [
        ("highlight", "show"),
        ("pause", 1300),
        ("highlight", "do"),
        ("pause", 800),
        ("formfill", "show"),
        ("pause", 1300),
        ("formfill", "do"),
        ("pause", 800),
        ("button", "show"),
        ("pause", 1300),
        ("button", "do"),
    ]
    name_input = asyncio.run(doc.query_all("#ds-name"))[0]
    save, = asyncio.run(doc.query_all("#save"))
    assert name_input.value == "prometheus"
    assert save.clicks == 1
    store = runtime.orchestrator.store
    assert [store.status(f"step-c{n}") for n in (1, 2, 3)] == [StepStatus.COMPLETED] * 3
    assert store.get("section-create-datasource").current_index == 2
    section, = asyncio.run(doc.query_all("#create-datasource"))
    assert "completed" in section.classes
    assert not runtime.orchestrator.active_sequences


def test_show_only_sequence_previews_every_child(monkeypatch):
    doc = _datasource_page()
    runtime = _runtime(doc)
    calls = _record(monkeypatch, runtime)

    asyncio.run(runtime.orchestrator.trigger(_sequence_step(), ActionMode.SHOW))

    assert calls == [
        ("highlight", "show"),
        ("pause", 1300),
        ("formfill", "show"),
        ("pause", 1300),
        ("button", "show"),
        ("pause", 1300),
    ]
    assert [name for name, *_ in doc.calls] == ["highlight", "highlight", "highlight"]
    assert runtime.orchestrator.state("step-c1").status is StepStatus.IDLE
    assert runtime.orchestrator.state("section-create-datasource").status is StepStatus.COMPLETED


def test_completed_children_are_reset_and_run_again(monkeypatch):
    runtime = _runtime(_datasource_page())
    calls = _record(monkeypatch, runtime)
    runtime.orchestrator.store.transition("step-c1", StepStatus.COMPLETED)

    asyncio.run(runtime.orchestrator.run_sequence(_sequence_step()))

    assert ("highlight", "do") in calls
    assert runtime.orchestrator.state("step-c1").status is StepStatus.COMPLETED


def test_failing_child_is_retried_then_skipped(monkeypatch):
    doc = _datasource_page(
        _control(data_targetaction="highlight", data_reftarget="#not-rendered-yet", data_step_id="c1"),
        _control(data_targetaction="button", data_reftarget="Save & test", data_step_id="c2"),
    )
    runtime = _runtime(doc, retry_max=2, retry_delay_ms=50)
    calls = _record(monkeypatch, runtime)

    outcome = asyncio.run(runtime.orchestrator.trigger(_sequence_step()))

    assert calls == [
        ("highlight", "show"),
        ("pause", 50),
        ("highlight", "show"),
        ("button", "show"),
        ("pause", 1300),
        ("button", "do"),
    ]
    assert outcome.status is StepStatus.COMPLETED
    assert runtime.orchestrator.state("step-c1").status is StepStatus.IDLE


def test_missing_container_fails_before_any_child():
    runtime = _runtime(_datasource_page())
    outcome = asyncio.run(runtime.orchestrator.trigger(_sequence_step("#nope")))
    assert outcome.status is StepStatus.ERROR
    assert outcome.message == "No interactive sequence container found matching selector: #nope"
    assert outcome.details["code"] == "RESOLUTION"
    assert runtime.dom.calls == []


def test_ambiguous_container_is_rejected():
    doc = FakeDocument(h("body", {}, h("div", {"class": "steps"}), h("div", {"class": "steps"})))
    runtime = _runtime(doc)
    outcome = asyncio.run(runtime.orchestrator.trigger(_sequence_step("div.steps")))
    assert outcome.status is StepStatus.ERROR
    assert outcome.message.startswith("2 interactive sequence containers found matching selector: div.steps")
    assert "must be exactly 1" in outcome.message


def test_empty_container_is_an_error():
    doc = FakeDocument(h("body", {}, h("div", {"id": "create-datasource"}, h("p", {}, "Intro text"))))
    runtime = _runtime(doc)
    outcome = asyncio.run(runtime.orchestrator.trigger(_sequence_step()))
    assert outcome.message == "No interactive elements found within sequence container: #create-datasource"
    assert runtime.orchestrator.state("section-create-datasource").error == outcome.message


def test_child_without_identifier_is_a_consistency_error():
    doc = _datasource_page(h("li", {"class": "interactive", "data-targetaction": "highlight", "data-reftarget": "a"}))
    runtime = _runtime(doc)
    with pytest.raises(StepConsistencyError):
        asyncio.run(runtime.orchestrator.trigger(_sequence_step()))
    assert not runtime.orchestrator.active_sequences


def test_running_sequence_is_not_started_twice(monkeypatch):
    runtime = _runtime(_datasource_page())
    calls = _record(monkeypatch, runtime)
    runtime.orchestrator.active_sequences.add("#create-datasource")
    assert asyncio.run(runtime.orchestrator.run_sequence(_sequence_step())) == "#create-datasource"
    assert calls == []


def test_requirements_failure_leaves_step_idle():
    runtime = _runtime(_datasource_page())
    step = StepDescriptor(
        target_action="highlight",
        ref_target="a.nav-connections",
        step_id="single",
        requirements="has-datasources",
        hints="Add a data source first",
    )
    outcome = asyncio.run(runtime.orchestrator.trigger(step))
    assert outcome.executed is False
    assert outcome.ok is False
    assert outcome.status is StepStatus.IDLE
    assert outcome.message == "No data sources found (Add a data source first)"
    assert runtime.dom.calls == []
    assert runtime.orchestrator.snapshot() == {}


def test_met_objectives_complete_without_acting():
    provider = StaticContextProvider(data_sources=[{"name": "prom", "uid": "p", "type": "prometheus"}])
    runtime = _runtime(_datasource_page(), provider)
    step = StepDescriptor(
        target_action="highlight",
        ref_target="a.nav-connections",
        step_id="single",
        objectives="has-datasource:prometheus",
        requirements="is-admin",
    )
    outcome = asyncio.run(runtime.orchestrator.trigger(step))
    assert outcome.status is StepStatus.COMPLETED
    assert outcome.message == "Objectives already met"
    assert runtime.dom.calls == []
    assert runtime.dom.completion_events[0][1] == "completed"


def test_single_step_show_then_do():
    doc = _datasource_page()
    runtime = _runtime(doc)
    step = StepDescriptor(target_action="highlight", ref_target="a.nav-connections", step_id="single")

    shown = asyncio.run(runtime.orchestrator.trigger(step, "show"))
    assert shown.status is StepStatus.IDLE
    assert shown.executed is True

    done = asyncio.run(runtime.orchestrator.trigger(step, "do"))
    assert done.status is StepStatus.COMPLETED
    assert [name for name, *_ in doc.calls] == ["highlight", "click"]

    again = asyncio.run(runtime.orchestrator.trigger(step, "do"))
    assert again.executed is False
    assert again.message == "Step is already completed"


def test_failed_step_reports_error_and_can_be_retried():
    doc = _datasource_page()
    runtime = _runtime(doc)
    step = StepDescriptor(target_action="button", ref_target="Delete", step_id="single")

    failed = asyncio.run(runtime.orchestrator.trigger(step))
    assert failed.status is StepStatus.ERROR
    assert failed.details["code"] == "ACTION"
    assert runtime.orchestrator.state("step-single").error == 'No buttons found containing text: "Delete"'

    doc.body.append(h("button", {}, "Delete"))
    retried = asyncio.run(runtime.orchestrator.trigger(step))
    assert retried.status is StepStatus.COMPLETED


def test_step_without_rendered_control_raises_consistency_error():
    runtime = _runtime(_datasource_page())
    step = StepDescriptor(target_action="highlight", ref_target="a.nav-connections", step_id="ghost")
    with pytest.raises(StepConsistencyError):
        asyncio.run(runtime.orchestrator.trigger(step))
    assert runtime.orchestrator.state("step-ghost").status is StepStatus.ERROR


def test_reset_clears_state_and_dom_marker():
    doc = _datasource_page()
    runtime = _runtime(doc)
    step = StepDescriptor(target_action="highlight", ref_target="a.nav-connections", step_id="single")
    asyncio.run(runtime.orchestrator.trigger(step))
    control, = asyncio.run(doc.query_all('[data-step-id="single"]'))
    assert "completed" in control.classes

    state = asyncio.run(runtime.orchestrator.reset("step-single"))
    assert state.status is StepStatus.IDLE
    assert "completed" not in control.classes


def test_state_changes_reach_subscribers():
    runtime = _runtime(_datasource_page())
    events = []
    runtime.orchestrator.channel.subscribe(events.append)
    step = StepDescriptor(target_action="highlight", ref_target="a.nav-connections", step_id="single")
    asyncio.run(runtime.orchestrator.trigger(step))
    assert [e.status for e in events] == [StepStatus.RUNNING, StepStatus.COMPLETED]


def test_concurrent_runs_of_one_sequence_execute_once(monkeypatch):
    runtime = _runtime(_datasource_page())
    calls = _record(monkeypatch, runtime)
    resolve = runtime.engine.resolve

    async def yielding_resolve(selector, root=None):
        await asyncio.sleep(0)
        return await resolve(selector, root)

    monkeypatch.setattr(runtime.engine, "resolve", yielding_resolve)

    async def scenario():
        first = asyncio.create_task(runtime.orchestrator.run_sequence(_sequence_step()))
        second = asyncio.create_task(runtime.orchestrator.run_sequence(_sequence_step()))
        return await asyncio.gather(first, second)

    assert asyncio.run(scenario()) == ["#create-datasource", "#create-datasource"]
    assert calls.count(("button", "do")) == 1
    assert runtime.orchestrator.state("section-create-datasource").status is StepStatus.COMPLETED
    assert not runtime.orchestrator.active_sequences


def test_completed_or_failed_sequence_can_run_again(monkeypatch):
    doc = _datasource_page()
    runtime = _runtime(doc)
    calls = _record(monkeypatch, runtime)

    asyncio.run(runtime.orchestrator.run_sequence(_sequence_step()))
    asyncio.run(runtime.orchestrator.run_sequence(_sequence_step()))
    assert calls.count(("button", "do")) == 2

    with pytest.raises(SequenceResolutionError):
        asyncio.run(runtime.orchestrator.run_sequence(_sequence_step("#nope")))
    assert runtime.orchestrator.state("section-create-datasource").status is StepStatus.ERROR
    assert not runtime.orchestrator.active_sequences
    again = asyncio.run(runtime.orchestrator.trigger(_sequence_step()))
    assert again.status is StepStatus.COMPLETED
    assert calls.count(("button", "do")) == 3
