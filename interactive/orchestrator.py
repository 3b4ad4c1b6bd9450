"""Runs steps, sequences and multi-step units with their state transitions.

A step moves idle -> running -> completed (or error) around each action.
Sequences walk the interactive controls inside one container in document
order, previewing each action before doing it. Multi-step units run a fixed
list of internal actions behind a single control.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from guidance.dsl.models import (
    ActionMode,
    InternalAction,
    MultiStepDescriptor,
    StepDescriptor,
    TargetAction,
)
from guidance.dsl.requirements import RequirementsResult

from .completion import CompletionTracker, resolve_content_root, unique_id_from_attributes
from .config import GuideConfig
from .errors import GuideError, SequenceResolutionError, StepConsistencyError
from .executor import ActionExecutor
from .requirements import CheckContext, RequirementsEvaluator
from .selector_engine import SelectorEngine
from .state import ExecutionState, StepStateStore, StepStatus

log = logging.getLogger(__name__)

SEQUENCE_CHILD_SELECTOR = '.interactive[data-targetaction]:not([data-targetaction="sequence"])'


@dataclass(slots=True)
class StepOutcome:
    step_id: str
    status: StepStatus
    executed: bool = False
    message: Optional[str] = None
    requirements: Optional[RequirementsResult] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.ERROR and (self.requirements is None or self.requirements.passed)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "step_id": self.step_id,
            "status": self.status.value,
            "executed": self.executed,
            "ok": self.ok,
        }
        if self.message:
            payload["message"] = self.message
        if self.requirements is not None:
            payload["requirements"] = self.requirements.payload()
        if self.details:
            payload["details"] = self.details
        return payload


def _context_for(step: StepDescriptor | InternalAction, step_id: Optional[str] = None) -> CheckContext:
    return CheckContext(
        target_action=step.target_action.value,
        ref_target=step.ref_target,
        target_value=step.target_value,
        step_id=step_id,
    )


class Orchestrator:
    """Owns step state, the event channel and the active-sequence guard."""

    def __init__(
        self,
        *,
        dom: Any,
        engine: SelectorEngine,
        evaluator: RequirementsEvaluator,
        executor: ActionExecutor,
        completion: CompletionTracker,
        config: GuideConfig,
        store: Optional[StepStateStore] = None,
    ) -> None:
        self.dom = dom
        self.engine = engine
        self.evaluator = evaluator
        self.executor = executor
        self.completion = completion
        self.config = config
        self.store = store or StepStateStore()
        self.active_sequences: Set[str] = set()

    @property
    def channel(self):
        return self.store.channel

    async def _pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

    def _begin(self, unique_id: str) -> None:
        if self.store.status(unique_id) in (StepStatus.COMPLETED, StepStatus.ERROR):
            self.store.reset(unique_id)
        self.store.transition(unique_id, StepStatus.RUNNING)

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------
    async def trigger(self, step: StepDescriptor, button_type: ActionMode | str = ActionMode.DO) -> StepOutcome:
        """Interactive entry point: gate, dispatch and report one control press."""

        mode = ActionMode(button_type)
        unique_id = step.unique_id
        if await self._objectives_met(step):
            return await self._complete_by_objectives(step)

        status = self.store.status(unique_id)
        if status in (StepStatus.RUNNING, StepStatus.COMPLETED):
            log.info("Step %s is %s; ignoring trigger", unique_id, status.value)
            return StepOutcome(unique_id, status, message=f"Step is already {status.value}")

        if isinstance(step, MultiStepDescriptor):
            return await self.run_multistep(step)

        requirements = await self.check(step)
        if not requirements.passed:
            explanation = requirements.explanation()
            if step.hints:
                explanation = f"{explanation} ({step.hints})"
            return StepOutcome(unique_id, status, message=explanation, requirements=requirements)

        try:
            if step.is_sequence:
                await self.run_sequence(step, show_only=mode is ActionMode.SHOW)
            else:
                await self.run_step(step, mode)
        except StepConsistencyError:
            raise
        except GuideError as exc:
            log.warning("Step %s failed: %s", unique_id, exc)
            return StepOutcome(
                unique_id,
                self.store.status(unique_id),
                message=str(exc),
                requirements=requirements,
                details=exc.as_dict(),
            )
        except Exception as exc:
            log.exception("Step %s failed unexpectedly", unique_id)
            return StepOutcome(unique_id, self.store.status(unique_id), message=str(exc), requirements=requirements)
        return StepOutcome(unique_id, self.store.status(unique_id), executed=True, requirements=requirements)

    async def check(self, step: StepDescriptor | InternalAction, step_id: Optional[str] = None) -> RequirementsResult:
        if isinstance(step, StepDescriptor):
            step_id = step_id or step.unique_id
        return await self.evaluator.evaluate(step.requirements, _context_for(step, step_id))

    def state(self, step_id: str) -> ExecutionState:
        return self.store.get(step_id)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return self.store.snapshot()

    async def reset(self, step_id: str) -> ExecutionState:
        """Make a completed or failed step runnable again."""

        state = self.store.reset(step_id)
        await self.completion.clear_completed(step_id)
        return state

    # ------------------------------------------------------------------
    # single steps
    # ------------------------------------------------------------------
    async def run_step(self, step: StepDescriptor, mode: ActionMode | str = ActionMode.DO) -> None:
        mode = ActionMode(mode)
        unique_id = step.unique_id
        self._begin(unique_id)
        try:
            await self.executor.execute(step.target_action, step.ref_target, step.target_value, mode)
            if mode is ActionMode.SHOW:
                self.store.transition(unique_id, StepStatus.IDLE)
                return
            await self.dom.settle()
            await self.completion.mark_completed(step)
        except Exception as exc:
            self.store.transition(unique_id, StepStatus.ERROR, error=str(exc))
            raise
        self.store.transition(unique_id, StepStatus.COMPLETED)

    # ------------------------------------------------------------------
    # sequences
    # ------------------------------------------------------------------
    async def run_sequence(self, step: StepDescriptor, show_only: bool = False) -> str:
        """Run every interactive control inside ``step.ref_target``.

        Returns the container selector. Raises when the container does not
        resolve to exactly one element or holds no interactive controls.
        """

        selector = step.ref_target
        if selector in self.active_sequences:
            log.info("Sequence %s is already running", selector)
            return selector

        unique_id = step.unique_id
        self.active_sequences.add(selector)
        try:
            self._begin(unique_id)
            try:
                container = await self._sequence_container(selector)
                children = await self._sequence_children(container, selector)
                if show_only:
                    await self._run_show_only(unique_id, children)
                else:
                    await self._run_step_by_step(unique_id, children)
                await self.completion.mark_completed(step)
            except Exception as exc:
                log.error("Error in sequence %s: %s", selector, exc)
                self.store.transition(unique_id, StepStatus.ERROR, error=str(exc))
                raise
            self.store.transition(unique_id, StepStatus.COMPLETED)
        finally:
            self.active_sequences.discard(selector)
        return selector

    async def _sequence_container(self, selector: str) -> Any:
        root = await resolve_content_root(self.dom, self.config)
        result = await self.engine.resolve(selector, root)
        if result.count == 0:
            raise SequenceResolutionError(
                f"No interactive sequence container found matching selector: {selector}",
                selector=selector,
            )
        if result.count > 1:
            raise SequenceResolutionError(
                f"{result.count} interactive sequence containers found matching selector: {selector}"
                " - this is not supported (must be exactly 1)",
                selector=selector,
                count=result.count,
            )
        return result.first

    async def _sequence_children(self, container: Any, selector: str) -> List[StepDescriptor]:
        children: List[StepDescriptor] = []
        for element in await self.dom.query_all(SEQUENCE_CHILD_SELECTOR, container):
            attributes = await self.dom.attributes(element)
            if not attributes.get("data-targetaction") or not attributes.get("data-reftarget"):
                continue
            unique_id_from_attributes(attributes)
            try:
                children.append(StepDescriptor.from_attributes(attributes))
            except ValidationError as exc:
                raise GuideError(
                    f"Invalid interactive element in sequence {selector}: {exc.errors()[0]['msg']}",
                    code="VALIDATION",
                    details={"attributes": attributes},
                ) from exc
        if not children:
            raise SequenceResolutionError(
                f"No interactive elements found within sequence container: {selector}",
                selector=selector,
                count=1,
            )
        return children

    async def _prepare_child(self, child: StepDescriptor) -> bool:
        """Reset a child for another run; returns False when its objectives are met."""

        if await self._objectives_met(child):
            if self.store.status(child.unique_id) is not StepStatus.COMPLETED:
                await self._complete_by_objectives(child)
            return False
        if self.store.status(child.unique_id) is not StepStatus.IDLE:
            self.store.reset(child.unique_id)
        return True

    async def _retry_pause(self, attempt: int) -> bool:
        """Wait before the next attempt; False once the retry budget is spent."""

        if attempt >= self.config.retry_max:
            return False
        await self._pause(self.config.retry_delay_ms)
        return True

    async def _requirements_ready(self, child: StepDescriptor, attempt: int) -> bool:
        result = await self.check(child)
        if not result.passed:
            log.info(
                "Requirements for %s not met (attempt %d/%d): %s",
                child.unique_id,
                attempt + 1,
                self.config.retry_max,
                result.explanation(),
            )
        return result.passed

    async def _run_show_only(self, sequence_id: str, children: List[StepDescriptor]) -> None:
        for index, child in enumerate(children):
            self.store.set_index(sequence_id, index)
            if not await self._prepare_child(child):
                continue
            attempt = 0
            while attempt < self.config.retry_max:
                if not await self._requirements_ready(child, attempt):
                    attempt += 1
                    if await self._retry_pause(attempt):
                        continue
                    log.warning("Skipping %s: requirements not met", child.unique_id)
                    break
                try:
                    await self.run_step(child, ActionMode.SHOW)
                except StepConsistencyError:
                    raise
                except Exception as exc:
                    attempt += 1
                    log.error("Error processing %s %s: %s", child.target_action.value, child.ref_target, exc)
                    self.store.reset(child.unique_id)
                    await self._retry_pause(attempt)
                    continue
                await self._pause(self.config.show_only_step_delay_ms)
                break

    async def _run_step_by_step(self, sequence_id: str, children: List[StepDescriptor]) -> None:
        last = len(children) - 1
        for index, child in enumerate(children):
            self.store.set_index(sequence_id, index)
            if not await self._prepare_child(child):
                continue
            attempt = 0
            while attempt < self.config.retry_max:
                if not await self._requirements_ready(child, attempt):
                    attempt += 1
                    if await self._retry_pause(attempt):
                        continue
                    log.warning("Skipping %s: requirements not met", child.unique_id)
                    break
                try:
                    await self.run_step(child, ActionMode.SHOW)
                    await self._pause(self.config.preview_settle_ms)
                    # The preview may have changed the page; check again before acting.
                    if not await self._requirements_ready(child, attempt):
                        attempt += 1
                        await self._retry_pause(attempt)
                        continue
                    await self.run_step(child, ActionMode.DO)
                except StepConsistencyError:
                    raise
                except Exception as exc:
                    attempt += 1
                    log.error("Error in interactive step for %s %s: %s", child.target_action.value, child.ref_target, exc)
                    self.store.reset(child.unique_id)
                    await self._retry_pause(attempt)
                    continue
                if index < last:
                    if child.target_action is TargetAction.BUTTON:
                        await self._pause(self.config.state_change_delay_ms)
                    else:
                        await self._pause(self.config.action_delay_ms)
                break

    # ------------------------------------------------------------------
    # multi-step units
    # ------------------------------------------------------------------
    async def run_multistep(self, step: MultiStepDescriptor) -> StepOutcome:
        unique_id = step.unique_id
        if await self._objectives_met(step):
            return await self._complete_by_objectives(step)

        status = self.store.status(unique_id)
        if status in (StepStatus.RUNNING, StepStatus.COMPLETED):
            return StepOutcome(unique_id, status, message=f"Step is already {status.value}")

        requirements = await self.check(step)
        if not requirements.passed:
            return StepOutcome(unique_id, status, message=requirements.explanation(), requirements=requirements)

        delay = step.step_delay_ms if step.step_delay_ms is not None else self.config.multistep_step_delay_ms
        last = len(step.internal_actions) - 1
        self._begin(unique_id)
        for index, action in enumerate(step.internal_actions):
            self.store.set_index(unique_id, index)
            log.info("Multi-step %s: internal action %d/%d", unique_id, index + 1, last + 1)
            failure = await self._internal_requirements(action, index, unique_id)
            if failure:
                return self._fail_multistep(unique_id, index, failure)
            try:
                await self.executor.execute(action.target_action, action.ref_target, action.target_value, ActionMode.SHOW)
                await self._pause(self.config.multistep_show_delay_ms)
                await self.executor.execute(action.target_action, action.ref_target, action.target_value, ActionMode.DO)
            except Exception as exc:
                log.error("Multi-step %s: internal action %d failed: %s", unique_id, index + 1, exc)
                return self._fail_multistep(unique_id, index, f"Step {index + 1} failed: {exc}")
            if index < last and delay > 0:
                await self._pause(delay)

        await self.dom.settle()
        self.store.transition(unique_id, StepStatus.COMPLETED, current_index=last)
        return StepOutcome(unique_id, StepStatus.COMPLETED, executed=True, requirements=requirements)

    async def _internal_requirements(self, action: InternalAction, index: int, unique_id: str) -> Optional[str]:
        if not action.requirements:
            return None
        timeout = self.config.requirement_timeout_ms / 1000
        try:
            result = await asyncio.wait_for(self.check(action, f"{unique_id}-{index + 1}"), timeout=timeout)
        except asyncio.TimeoutError:
            return f"Step {index + 1} requirements check failed: Requirements check timeout"
        if result.passed:
            return None
        return f"Step {index + 1} requirements not met: {result.explanation()}"

    def _fail_multistep(self, unique_id: str, index: int, message: str) -> StepOutcome:
        self.store.transition(unique_id, StepStatus.ERROR, error=message, current_index=index)
        return StepOutcome(unique_id, StepStatus.ERROR, message=message, details={"failed_index": index})

    # ------------------------------------------------------------------
    # objectives
    # ------------------------------------------------------------------
    async def _objectives_met(self, step: StepDescriptor) -> bool:
        if not step.objectives:
            return False
        result = await self.evaluator.evaluate(step.objectives, _context_for(step, step.unique_id))
        return result.passed

    async def _complete_by_objectives(self, step: StepDescriptor) -> StepOutcome:
        unique_id = step.unique_id
        status = self.store.status(unique_id)
        if status is StepStatus.COMPLETED:
            return StepOutcome(unique_id, status, message="Objectives already met")
        if status is not StepStatus.IDLE:
            self.store.reset(unique_id)
        log.info("Objectives already met for %s; skipping its actions", unique_id)
        if not isinstance(step, MultiStepDescriptor):
            await self.completion.mark_completed(step)
        self.store.transition(unique_id, StepStatus.COMPLETED)
        return StepOutcome(unique_id, StepStatus.COMPLETED, message="Objectives already met")
