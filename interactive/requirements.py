"""Evaluation of requirements expressions against the page and environment."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from guidance.dsl.models import TargetAction
from guidance.dsl.requirements import (
    CheckResult,
    Requirement,
    RequirementKind,
    RequirementsResult,
    parse_requirements,
)

from .config import GuideConfig
from .context_provider import ContextProvider
from .executor import find_buttons_by_text
from .selector_engine import SelectorEngine

log = logging.getLogger(__name__)

_LEADING_DIGITS = re.compile(r"^\d+")


@dataclass(slots=True)
class CheckContext:
    """The step a requirements expression is being evaluated for."""

    target_action: str = TargetAction.BUTTON.value
    ref_target: str = ""
    target_value: Optional[str] = None
    step_id: Optional[str] = None


def parse_version(version: str) -> Tuple[int, int, int]:
    """``major.minor.patch`` as integers; missing parts are 0, suffixes ignored."""

    parts: List[int] = []
    for piece in (version or "").strip().lstrip("vV").split(".")[:3]:
        match = _LEADING_DIGITS.match(piece)
        parts.append(int(match.group(0)) if match else 0)
    while len(parts) < 3:
        parts.append(0)
    return parts[0], parts[1], parts[2]


def role_satisfies(user: dict, required: str) -> bool:
    required = required.lower()
    org_role = user.get("orgRole") or ""
    server_admin = bool(user.get("isGrafanaAdmin"))
    if required in {"admin", "grafana-admin"}:
        return server_admin
    if required == "editor":
        return org_role in {"Editor", "Admin"} or server_admin
    if required == "viewer":
        return bool(org_role)
    return org_role.lower() == required


class RequirementsEvaluator:
    """Runs every check of an expression concurrently and ANDs the verdicts."""

    def __init__(self, provider: ContextProvider, dom: Any, engine: SelectorEngine, config: GuideConfig) -> None:
        self.provider = provider
        self.dom = dom
        self.engine = engine
        self.config = config

    async def evaluate(self, expression: Optional[str], context: Optional[CheckContext] = None) -> RequirementsResult:
        context = context or CheckContext()
        requirements = parse_requirements(expression)
        if not requirements:
            return RequirementsResult(requirements=expression or "", passed=True)
        results = await asyncio.gather(*(self._run_check(req, context) for req in requirements))
        return RequirementsResult(
            requirements=expression or "",
            passed=all(result.passed for result in results),
            results=list(results),
        )

    async def _run_check(self, requirement: Requirement, context: CheckContext) -> CheckResult:
        try:
            return await self.check(requirement, context)
        except Exception as exc:
            log.warning("Requirement %s raised: %s", requirement.raw, exc)
            return CheckResult.failed(requirement.raw, f"Check failed: {exc}")

    async def check(self, requirement: Requirement, context: CheckContext) -> CheckResult:
        kind = requirement.kind
        if kind is RequirementKind.EXISTS_REFTARGET:
            return await self._reftarget_exists(requirement, context)
        if kind is RequirementKind.NAVMENU_OPEN:
            return await self._navmenu_open(requirement)
        if kind is RequirementKind.IS_ADMIN:
            return await self._is_admin(requirement)
        if kind is RequirementKind.HAS_DATASOURCES:
            return await self._has_datasources(requirement)
        if kind is RequirementKind.HAS_DATASOURCE:
            return await self._has_datasource(requirement)
        if kind is RequirementKind.HAS_PLUGIN:
            return await self._has_plugin(requirement)
        if kind is RequirementKind.HAS_DASHBOARD_NAMED:
            return await self._has_dashboard_named(requirement)
        if kind is RequirementKind.HAS_PERMISSION:
            return await self._has_permission(requirement)
        if kind is RequirementKind.HAS_ROLE:
            return await self._has_role(requirement)
        if kind is RequirementKind.ON_PAGE:
            return await self._on_page(requirement)
        if kind is RequirementKind.HAS_FEATURE:
            return await self._has_feature(requirement)
        if kind is RequirementKind.IN_ENVIRONMENT:
            return await self._in_environment(requirement)
        if kind is RequirementKind.MIN_VERSION:
            return await self._min_version(requirement)
        # Unrecognised names are let through so older content keeps working.
        log.warning("Unknown requirement: %s", requirement.raw)
        if self.config.unknown_requirements_pass:
            return CheckResult(requirement=requirement.raw, passed=True, error="Unknown requirement")
        return CheckResult.failed(requirement.raw, "Unknown requirement")

    async def _reftarget_exists(self, requirement: Requirement, context: CheckContext) -> CheckResult:
        if context.target_action == TargetAction.BUTTON.value:
            buttons = await find_buttons_by_text(self.dom, context.ref_target)
            if buttons:
                return CheckResult.ok(requirement.raw)
            return CheckResult.failed(requirement.raw, f'No buttons found containing text: "{context.ref_target}"')
        result = await self.engine.resolve(context.ref_target)
        if result.count:
            return CheckResult.ok(requirement.raw, context=result.to_dict())
        return CheckResult.failed(requirement.raw, "Element not found", context=result.to_dict())

    async def _navmenu_open(self, requirement: Requirement) -> CheckResult:
        menus = await self.dom.query_all(self.config.navmenu_selector)
        if menus:
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, "Navmenu is not open")

    async def _is_admin(self, requirement: Requirement) -> CheckResult:
        user = await self.provider.get_user()
        if user is None:
            return CheckResult.failed(requirement.raw, "Unable to determine user admin status")
        if user.get("isGrafanaAdmin"):
            return CheckResult.ok(requirement.raw, context=user)
        return CheckResult.failed(requirement.raw, "User is not an admin", context=user)

    async def _has_datasources(self, requirement: Requirement) -> CheckResult:
        sources = await self.provider.get_data_sources()
        if sources:
            return CheckResult.ok(requirement.raw, context=sources)
        return CheckResult.failed(requirement.raw, "No data sources found", context=sources)

    async def _has_datasource(self, requirement: Requirement) -> CheckResult:
        wanted = requirement.argument.lower()
        for source in await self.provider.get_data_sources():
            values = (source.get("name"), source.get("uid"), source.get("type"))
            if any(str(value).lower() == wanted for value in values if value is not None):
                return CheckResult.ok(requirement.raw, context=source)
        return CheckResult.failed(requirement.raw, f"No data source found with name/uid/type: {wanted}")

    async def _has_plugin(self, requirement: Requirement) -> CheckResult:
        plugins = await self.provider.get_plugins()
        if any(plugin.get("id") == requirement.argument for plugin in plugins):
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, f"Plugin '{requirement.argument}' is not installed or enabled")

    async def _has_dashboard_named(self, requirement: Requirement) -> CheckResult:
        title = requirement.argument
        dashboards = await self.provider.search_dashboards(title)
        if any(str(item.get("title", "")).lower() == title.lower() for item in dashboards):
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, f"Dashboard named '{title}' not found")

    async def _has_permission(self, requirement: Requirement) -> CheckResult:
        permissions = await self.provider.get_permissions()
        if requirement.argument in permissions:
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, f"Missing permission: {requirement.argument}")

    async def _has_role(self, requirement: Requirement) -> CheckResult:
        user = await self.provider.get_user()
        if user is None:
            return CheckResult.failed(requirement.raw, "User information not available")
        required = requirement.argument.lower()
        if role_satisfies(user, required):
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(
            requirement.raw,
            f"User role '{user.get('orgRole') or 'none'}' does not meet requirement '{required}'",
        )

    async def _on_page(self, requirement: Requirement) -> CheckResult:
        current = await self.dom.location_path()
        wanted = requirement.argument
        if current == wanted or wanted in current:
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, f"Current page '{current}' does not match required path '{wanted}'")

    async def _has_feature(self, requirement: Requirement) -> CheckResult:
        toggles = await self.provider.feature_toggles()
        if toggles.get(requirement.argument):
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, f"Feature toggle '{requirement.argument}' is not enabled")

    async def _in_environment(self, requirement: Requirement) -> CheckResult:
        wanted = requirement.argument.lower()
        current = str((await self.provider.build_info()).get("env") or "unknown").lower()
        if current == wanted:
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(requirement.raw, f"Current environment '{current}' does not match required '{wanted}'")

    async def _min_version(self, requirement: Requirement) -> CheckResult:
        current = str((await self.provider.build_info()).get("version") or "0.0.0")
        if parse_version(current) >= parse_version(requirement.argument):
            return CheckResult.ok(requirement.raw)
        return CheckResult.failed(
            requirement.raw,
            f"Current version '{current}' does not meet minimum requirement '{requirement.argument}'",
        )
