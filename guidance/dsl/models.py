"""Typed DSL models for interactive walkthrough steps."""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Mapping, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class TargetAction(str, Enum):
    HIGHLIGHT = "highlight"
    BUTTON = "button"
    FORMFILL = "formfill"
    NAVIGATE = "navigate"
    SEQUENCE = "sequence"
    MULTISTEP = "multistep"


class ActionMode(str, Enum):
    """Show previews an action, do commits it."""

    SHOW = "show"
    DO = "do"


# Actions the executor can perform directly against the page.
ELEMENT_ACTIONS: FrozenSet[TargetAction] = frozenset(
    {
        TargetAction.HIGHLIGHT,
        TargetAction.BUTTON,
        TargetAction.FORMFILL,
        TargetAction.NAVIGATE,
    }
)

CORE_ATTRIBUTES: FrozenSet[str] = frozenset(
    {
        "data-reftarget",
        "data-targetaction",
        "data-targetvalue",
        "data-requirements",
    }
)

_ATTRIBUTE_FIELDS = {
    "data-reftarget": "ref_target",
    "data-targetaction": "target_action",
    "data-targetvalue": "target_value",
    "data-requirements": "requirements",
    "data-objectives": "objectives",
    "data-step-id": "step_id",
    "data-section-id": "section_id",
    "data-hints": "hints",
}


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class InternalAction(BaseModel):
    """One action inside a multi-step unit; has no identifier of its own."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    target_action: TargetAction = Field(
        alias="target_action",
        validation_alias=AliasChoices("target_action", "targetAction", "targetaction"),
    )
    ref_target: str = Field(
        default="",
        alias="ref_target",
        validation_alias=AliasChoices("ref_target", "refTarget", "reftarget"),
    )
    target_value: Optional[str] = Field(
        default=None,
        alias="target_value",
        validation_alias=AliasChoices("target_value", "targetValue", "targetvalue"),
    )
    requirements: Optional[str] = None

    @field_validator("target_value", "requirements", mode="before")
    @classmethod
    def _normalise_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("target_action")
    @classmethod
    def _validate_action(cls, value: TargetAction) -> TargetAction:
        if value not in ELEMENT_ACTIONS:
            raise ValueError(f"internal actions cannot use '{value.value}'")
        return value


class StepDescriptor(BaseModel):
    """Declarative description of one interactive step."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    __step_kinds__: ClassVar[FrozenSet[TargetAction]] = frozenset(
        ELEMENT_ACTIONS | {TargetAction.SEQUENCE}
    )

    target_action: TargetAction = Field(
        alias="target_action",
        validation_alias=AliasChoices("target_action", "targetAction", "targetaction"),
    )
    ref_target: str = Field(
        default="",
        alias="ref_target",
        validation_alias=AliasChoices("ref_target", "refTarget", "reftarget"),
    )
    target_value: Optional[str] = Field(
        default=None,
        alias="target_value",
        validation_alias=AliasChoices("target_value", "targetValue", "targetvalue"),
    )
    requirements: Optional[str] = None
    objectives: Optional[str] = None
    hints: Optional[str] = None
    step_id: Optional[str] = Field(
        default=None,
        alias="step_id",
        validation_alias=AliasChoices("step_id", "stepId"),
    )
    section_id: Optional[str] = Field(
        default=None,
        alias="section_id",
        validation_alias=AliasChoices("section_id", "sectionId"),
    )
    custom_data: Dict[str, str] = Field(
        default_factory=dict,
        alias="custom_data",
        validation_alias=AliasChoices("custom_data", "customData"),
    )

    @field_validator(
        "target_value", "requirements", "objectives", "hints", "step_id", "section_id", mode="before"
    )
    @classmethod
    def _normalise_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _check_identity(self) -> "StepDescriptor":
        if self.target_action not in self.__step_kinds__:
            raise ValueError(
                f"{type(self).__name__} does not accept target action '{self.target_action.value}'"
            )
        if self.step_id and self.section_id:
            raise ValueError("a step carries exactly one of step_id or section_id")
        if not self.step_id and not self.section_id:
            raise ValueError(
                "interactive step is missing its unique identifier "
                f"(reftarget={self.ref_target!r}, targetaction={self.target_action.value})"
            )
        return self

    @property
    def unique_id(self) -> str:
        if self.section_id:
            return f"section-{self.section_id}"
        return f"step-{self.step_id}"

    @property
    def is_sequence(self) -> bool:
        return self.target_action is TargetAction.SEQUENCE

    @classmethod
    def from_attributes(cls, attributes: Mapping[str, str]) -> "StepDescriptor":
        """Build a descriptor from the ``data-*`` attributes of a rendered control."""

        data: Dict[str, Any] = {}
        custom: Dict[str, str] = {}
        for name, value in attributes.items():
            if not name.startswith("data-"):
                continue
            field_name = _ATTRIBUTE_FIELDS.get(name)
            if field_name:
                data[field_name] = value
            if name not in CORE_ATTRIBUTES:
                custom[name[5:]] = value
        data["custom_data"] = custom
        return cls.model_validate(data)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class MultiStepDescriptor(StepDescriptor):
    """A fixed list of internal actions sharing one "do it" control."""

    __step_kinds__ = frozenset({TargetAction.MULTISTEP})

    internal_actions: List[InternalAction] = Field(
        alias="internal_actions",
        validation_alias=AliasChoices("internal_actions", "internalActions"),
    )
    step_delay_ms: Optional[int] = Field(
        default=None,
        ge=0,
        alias="step_delay_ms",
        validation_alias=AliasChoices("step_delay_ms", "stepDelay"),
    )

    @field_validator("internal_actions")
    @classmethod
    def _ensure_actions(cls, value: List[InternalAction]) -> List[InternalAction]:
        if not value:
            raise ValueError("a multi-step needs at least one internal action")
        return value
