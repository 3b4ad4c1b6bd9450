"""Performs a single step action against the page in show or do mode."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from guidance.dsl.models import ActionMode, TargetAction

from .config import GuideConfig
from .errors import ActionError
from .selector_engine import SelectorEngine

log = logging.getLogger(__name__)

EXTERNAL_SCHEMES = ("http://", "https://")


async def find_buttons_by_text(dom: Any, text: str) -> List[Any]:
    """Every ``button`` whose rendered text contains ``text``, ignoring case."""

    if not text or not isinstance(text, str):
        return []
    needle = text.lower().strip()
    matches = []
    for button in await dom.query_all("button"):
        rendered = await dom.rendered_text(button)
        if needle in rendered.lower():
            matches.append(button)
    return matches


@dataclass(slots=True)
class ActionOutcome:
    action: str
    mode: str
    locator: str
    count: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "action": self.action,
            "mode": self.mode,
            "locator": self.locator,
            "count": self.count,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ActionExecutor:
    """Pure DOM side of a step; state bookkeeping belongs to the orchestrator."""

    def __init__(self, engine: SelectorEngine, dom: Any, config: GuideConfig) -> None:
        self.engine = engine
        self.dom = dom
        self.config = config

    async def execute(
        self,
        action: TargetAction | str,
        locator: str,
        value: Optional[str] = None,
        mode: ActionMode | str = ActionMode.DO,
    ) -> ActionOutcome:
        action = TargetAction(action)
        mode = ActionMode(mode)
        if action is TargetAction.HIGHLIGHT:
            return await self._highlight(locator, mode)
        if action is TargetAction.BUTTON:
            return await self._button(locator, mode)
        if action is TargetAction.FORMFILL:
            return await self._formfill(locator, value or "", mode)
        if action is TargetAction.NAVIGATE:
            return await self._navigate(locator, mode)
        raise ActionError(f"Unsupported action {action.value}", details={"locator": locator})

    async def _resolve(self, action: TargetAction, locator: str) -> List[Any]:
        result = await self.engine.resolve(locator)
        if not result.elements:
            raise ActionError(
                f"No elements found matching selector: {locator}",
                details={"action": action.value, **result.to_dict()},
            )
        if result.used_fallback:
            log.debug("Resolved %s via fallback as %s", locator, result.effective_selector)
        return result.elements

    async def _highlight(self, locator: str, mode: ActionMode) -> ActionOutcome:
        elements = await self._resolve(TargetAction.HIGHLIGHT, locator)
        for element in elements:
            if mode is ActionMode.SHOW:
                await self.dom.highlight(element, self.config.highlight_duration_ms)
            else:
                await self.dom.click(element)
        return ActionOutcome(TargetAction.HIGHLIGHT.value, mode.value, locator, len(elements))

    async def _button(self, locator: str, mode: ActionMode) -> ActionOutcome:
        buttons = await find_buttons_by_text(self.dom, locator)
        if not buttons:
            raise ActionError(f'No buttons found containing text: "{locator}"', details={"locator": locator})
        for button in buttons:
            if mode is ActionMode.SHOW:
                await self.dom.highlight(button, self.config.highlight_duration_ms)
            else:
                await self.dom.click(button)
        return ActionOutcome(TargetAction.BUTTON.value, mode.value, locator, len(buttons))

    async def _formfill(self, locator: str, value: str, mode: ActionMode) -> ActionOutcome:
        elements = await self._resolve(TargetAction.FORMFILL, locator)
        if len(elements) > 1:
            log.warning("Multiple elements found matching selector: %s", locator)
        target = elements[0]
        if mode is ActionMode.SHOW:
            await self.dom.highlight(target, self.config.highlight_duration_ms)
            return ActionOutcome(TargetAction.FORMFILL.value, mode.value, locator, 1)
        tag = await self.dom.set_form_value(target, value)
        events = await self.dom.dispatch_form_events(target, tag)
        return ActionOutcome(
            TargetAction.FORMFILL.value,
            mode.value,
            locator,
            1,
            details={"tag": tag, "events": events},
        )

    async def _navigate(self, locator: str, mode: ActionMode) -> ActionOutcome:
        if mode is ActionMode.SHOW:
            log.info("Would navigate to %s", locator)
            return ActionOutcome(TargetAction.NAVIGATE.value, mode.value, locator)
        if locator.startswith(EXTERNAL_SCHEMES):
            await self.dom.open_external(locator)
            target = "external"
        else:
            await self.dom.push_route(locator)
            target = "router"
        return ActionOutcome(TargetAction.NAVIGATE.value, mode.value, locator, 1, details={"via": target})
