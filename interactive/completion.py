"""Completion bookkeeping for rendered step controls."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .config import GuideConfig
from .errors import StepConsistencyError

log = logging.getLogger(__name__)

CONTROL_SELECTOR = "[data-requirements]"


def unique_id_from_attributes(attributes: Mapping[str, str]) -> str:
    """``section-<id>`` or ``step-<id>`` for a rendered control.

    Content rendering assigns one of the two ids to every interactive control,
    so a control without either means the rendering step is broken.
    """

    section_id = (attributes.get("data-section-id") or "").strip()
    step_id = (attributes.get("data-step-id") or "").strip()
    if section_id:
        return f"section-{section_id}"
    if step_id:
        return f"step-{step_id}"
    raise StepConsistencyError(
        "Interactive element missing required unique step ID: "
        f"reftarget={attributes.get('data-reftarget')}, targetaction={attributes.get('data-targetaction')}",
        details={"attributes": dict(attributes)},
    )


async def resolve_content_root(dom: Any, config: GuideConfig) -> Optional[Any]:
    """The element hosting walkthrough content, or ``None`` for the whole document."""

    if not config.content_root_selector:
        return None
    roots = await dom.query_all(config.content_root_selector)
    if not roots:
        log.debug("Content root %s not found; using document", config.content_root_selector)
        return None
    return roots[0]


class CompletionTracker:
    def __init__(self, dom: Any, config: GuideConfig) -> None:
        self.dom = dom
        self.config = config

    async def group_controls(self) -> Dict[str, List[Any]]:
        """All step controls in the content root, grouped by unique id in document order."""

        root = await resolve_content_root(self.dom, self.config)
        groups: Dict[str, List[Any]] = {}
        for control in await self.dom.query_all(CONTROL_SELECTOR, root):
            attributes = await self.dom.attributes(control)
            if not ((attributes.get("data-section-id") or "").strip() or (attributes.get("data-step-id") or "").strip()):
                log.warning("Skipping control without step id: %s", attributes.get("data-reftarget"))
                continue
            groups.setdefault(unique_id_from_attributes(attributes), []).append(control)
        return groups

    async def _group_for(self, unique_id: Optional[str]) -> List[Any]:
        if not unique_id:
            log.error("Cannot record completion for a step without a unique id")
            raise StepConsistencyError("Interactive step missing required unique step ID")
        groups = await self.group_controls()
        controls = groups.get(unique_id)
        if not controls:
            log.error(
                "No step found with unique id %s; available steps: %s",
                unique_id,
                sorted(groups),
            )
            raise StepConsistencyError(
                f"Step not found for unique ID: {unique_id}",
                details={"unique_id": unique_id, "available": sorted(groups)},
            )
        return controls

    async def mark_completed(self, step: Any) -> List[Any]:
        """Mark every control of ``step``'s group completed and announce it."""

        unique_id = getattr(step, "unique_id", None)
        controls = await self._group_for(unique_id)
        log.info("Marking step %s completed (%d controls)", unique_id, len(controls))
        await self.dom.mark_completed(controls)
        await self.dom.settle()
        await self.dom.dispatch_completion_event(controls[0], "completed")
        return controls

    async def clear_completed(self, unique_id: str) -> List[Any]:
        """Undo the DOM completion marker; missing groups are not an error here."""

        groups = await self.group_controls()
        controls = groups.get(unique_id, [])
        if controls:
            await self.dom.clear_completed(controls)
        return controls
