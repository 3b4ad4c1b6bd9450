"""Requirement expression parsing and check result models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RequirementKind(str, Enum):
    """Closed set of requirement checks understood by the evaluator.

    The value is the check name as written in a requirements expression;
    kinds that take an argument are written ``name:argument``.
    """

    EXISTS_REFTARGET = "exists-reftarget"
    NAVMENU_OPEN = "navmenu-open"
    IS_ADMIN = "is-admin"
    HAS_DATASOURCES = "has-datasources"
    HAS_DATASOURCE = "has-datasource"
    HAS_PLUGIN = "has-plugin"
    HAS_DASHBOARD_NAMED = "has-dashboard-named"
    HAS_PERMISSION = "has-permission"
    HAS_ROLE = "has-role"
    ON_PAGE = "on-page"
    HAS_FEATURE = "has-feature"
    IN_ENVIRONMENT = "in-environment"
    MIN_VERSION = "min-version"
    UNKNOWN = "unknown"

    @property
    def takes_argument(self) -> bool:
        return self in _ARGUMENT_KINDS


_ARGUMENT_KINDS = frozenset(
    {
        RequirementKind.HAS_DATASOURCE,
        RequirementKind.HAS_PLUGIN,
        RequirementKind.HAS_DASHBOARD_NAMED,
        RequirementKind.HAS_PERMISSION,
        RequirementKind.HAS_ROLE,
        RequirementKind.ON_PAGE,
        RequirementKind.HAS_FEATURE,
        RequirementKind.IN_ENVIRONMENT,
        RequirementKind.MIN_VERSION,
    }
)

_EXACT_KINDS = {
    kind.value: kind
    for kind in RequirementKind
    if kind is not RequirementKind.UNKNOWN and kind not in _ARGUMENT_KINDS
}
_PREFIX_KINDS = {f"{kind.value}:": kind for kind in _ARGUMENT_KINDS}


@dataclass(frozen=True, slots=True)
class Requirement:
    """A single parsed check from a requirements expression."""

    kind: RequirementKind
    raw: str
    argument: str = ""


def parse_requirement(text: str) -> Requirement:
    raw = text.strip()
    exact = _EXACT_KINDS.get(raw)
    if exact is not None:
        return Requirement(kind=exact, raw=raw)
    for prefix, kind in _PREFIX_KINDS.items():
        if raw.startswith(prefix):
            return Requirement(kind=kind, raw=raw, argument=raw[len(prefix):].strip())
    return Requirement(kind=RequirementKind.UNKNOWN, raw=raw)


def parse_requirements(expression: Optional[str]) -> List[Requirement]:
    """Split a comma separated expression into parsed checks, dropping blanks."""

    if not expression:
        return []
    return [parse_requirement(item) for item in expression.split(",") if item.strip()]


class CheckResult(BaseModel):
    """Outcome of one requirement check."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    requirement: str
    passed: bool = Field(alias="pass")
    error: Optional[str] = None
    context: Any = None

    @classmethod
    def ok(cls, requirement: str, *, context: Any = None) -> "CheckResult":
        return cls(requirement=requirement, passed=True, context=context)

    @classmethod
    def failed(cls, requirement: str, error: str, *, context: Any = None) -> "CheckResult":
        return cls(requirement=requirement, passed=False, error=error, context=context)


class RequirementsResult(BaseModel):
    """Conjunction of every check in a requirements expression."""

    model_config = ConfigDict(populate_by_name=True)

    requirements: str = ""
    passed: bool = Field(alias="pass")
    results: List[CheckResult] = Field(default_factory=list)

    @property
    def failures(self) -> List[CheckResult]:
        return [result for result in self.results if not result.passed]

    def explanation(self) -> str:
        return ", ".join(result.error or result.requirement for result in self.failures)

    def payload(self) -> dict:
        data = self.model_dump(by_alias=True, exclude={"results": {"__all__": {"context"}}})
        return data
