"""Registry mapping target actions to their descriptor models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Type

from .models import MultiStepDescriptor, StepDescriptor, TargetAction


@dataclass(slots=True)
class StepSpec:
    action: TargetAction
    model: Type[StepDescriptor]
    description: str | None = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "model": self.model.__name__,
            "description": self.description or "",
        }


class StepRegistry:
    """Central registry holding the descriptor model of each target action."""

    def __init__(self) -> None:
        self._steps: Dict[TargetAction, StepSpec] = {}

    def register(
        self,
        action: TargetAction,
        model: Type[StepDescriptor],
        *,
        description: str | None = None,
    ) -> Type[StepDescriptor]:
        if not issubclass(model, StepDescriptor):
            raise TypeError("model must subclass StepDescriptor")
        self._steps[action] = StepSpec(action=action, model=model, description=description)
        return model

    def get(self, action: TargetAction | str) -> StepSpec:
        try:
            return self._steps[TargetAction(action)]
        except (KeyError, ValueError) as exc:
            raise KeyError(f"Unknown target action '{action}'") from exc

    def __contains__(self, action: object) -> bool:  # pragma: no cover - trivial
        try:
            return TargetAction(action) in self._steps
        except ValueError:
            return False

    def __iter__(self) -> Iterator[StepSpec]:  # pragma: no cover - trivial
        return iter(self._steps.values())

    def parse_step(self, data: Any) -> StepDescriptor:
        if isinstance(data, StepDescriptor):
            return data
        if not isinstance(data, dict):
            raise TypeError("step payload must be a mapping")
        action = (
            data.get("target_action")
            or data.get("targetAction")
            or data.get("targetaction")
        )
        if action is None:
            raise KeyError("step payload has no target action")
        return self.get(action).model.model_validate(data)

    def schema(self) -> Dict[str, Any]:
        return {action.value: spec.to_metadata() for action, spec in self._steps.items()}


registry = StepRegistry()

registry.register(TargetAction.HIGHLIGHT, StepDescriptor, description="Outline or click matched elements")
registry.register(TargetAction.BUTTON, StepDescriptor, description="Outline or click buttons by text")
registry.register(TargetAction.FORMFILL, StepDescriptor, description="Fill a single form control")
registry.register(TargetAction.NAVIGATE, StepDescriptor, description="Route to a path or open a URL")
registry.register(TargetAction.SEQUENCE, StepDescriptor, description="Run every step inside a container")
registry.register(TargetAction.MULTISTEP, MultiStepDescriptor, description="Run inline internal actions")
