"""Declarative step and requirement models."""

from .models import (
    ActionMode,
    ELEMENT_ACTIONS,
    InternalAction,
    MultiStepDescriptor,
    StepDescriptor,
    TargetAction,
)
from .registry import StepRegistry, registry
from .requirements import (
    CheckResult,
    Requirement,
    RequirementKind,
    RequirementsResult,
    parse_requirement,
    parse_requirements,
)
from .resolution import SelectorResult

__all__ = [
    "ActionMode",
    "CheckResult",
    "ELEMENT_ACTIONS",
    "InternalAction",
    "MultiStepDescriptor",
    "Requirement",
    "RequirementKind",
    "RequirementsResult",
    "SelectorResult",
    "StepDescriptor",
    "StepRegistry",
    "TargetAction",
    "parse_requirement",
    "parse_requirements",
    "registry",
]
