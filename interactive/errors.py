"""Exception types raised by the walkthrough runtime."""

from __future__ import annotations

from typing import Any, Dict, Optional


class GuideError(Exception):
    def __init__(self, message: str, *, code: str = "GUIDE_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.details:
            payload["details"] = self.details
        return payload


class SelectorSyntaxError(GuideError):
    """The page rejected a selector during native evaluation."""

    def __init__(self, selector: str, reason: str = "") -> None:
        super().__init__(
            f"Selector is not valid natively: {selector}" + (f" ({reason})" if reason else ""),
            code="SELECTOR_SYNTAX",
            details={"selector": selector},
        )
        self.selector = selector


class SequenceResolutionError(GuideError):
    def __init__(self, message: str, *, selector: str, count: int = 0) -> None:
        super().__init__(message, code="RESOLUTION", details={"selector": selector, "count": count})
        self.selector = selector
        self.count = count


class ActionError(GuideError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="ACTION", details=details)


class StepConsistencyError(GuideError):
    """Identifier-to-step grouping is broken; indicates an upstream defect."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="CONSISTENCY", details=details)


class InvalidTransition(GuideError):
    def __init__(self, step_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Step {step_id} cannot move from {current} to {requested}",
            code="STATE",
            details={"step_id": step_id, "current": current, "requested": requested},
        )
