"""Selector resolution with fallbacks for non-standard pseudo-selectors.

Selectors are first handed to the page's own ``querySelectorAll``. Only when
that finds nothing for a selector carrying one of the custom pseudo-classes
(``:contains()``, ``:has()``, ``:text()``, ``:nth-match()``), or when the page
rejects the selector outright, is it parsed here and matched piecewise.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Tuple

from guidance.dsl.resolution import SelectorResult

from .errors import SelectorSyntaxError

log = logging.getLogger(__name__)

CUSTOM_TOKENS = (":contains(", ":has(", ":text(", ":nth-match(")

INVALID_CONTAINS_SYNTAX = "INVALID_CONTAINS_SYNTAX"
INVALID_HAS_SYNTAX = "INVALID_HAS_SYNTAX"
INVALID_TEXT_SYNTAX = "INVALID_TEXT_SYNTAX"
INVALID_NTH_MATCH_SYNTAX = "INVALID_NTH_MATCH_SYNTAX"
INVALID_NTH_MATCH_INDEX = "INVALID_NTH_MATCH_INDEX"
ERROR_IN_CONTAINS = "ERROR_IN_CONTAINS"
ERROR_IN_HAS = "ERROR_IN_HAS"
ERROR_IN_TEXT = "ERROR_IN_TEXT"
ERROR_IN_NTH_MATCH = "ERROR_IN_NTH_MATCH"
UNSUPPORTED = "UNSUPPORTED"
ERROR = "ERROR"


NTH_MATCH_PATTERN = re.compile(r"^(.+?):nth-match\((\d+)\)(.*)$", re.DOTALL)
NTH_MATCH_ANY_INDEX = re.compile(r":nth-match\((-?\d+)\)")
HAS_PRESENT = re.compile(r":has\([^)]*\)")
CONTAINS_PRESENT = re.compile(r":contains\([^)]*\)")
CONTAINS_PATTERN = re.compile(r"""^(.+?):contains\((['"]?)([^'")]*?)\2\)(.*)$""", re.DOTALL)
INNER_CONTAINS_PATTERN = re.compile(r"""^(.+?):contains\((['"]?)([^'"]*)\2\)(.*)$""", re.DOTALL)
TEXT_PATTERN = re.compile(r"""^(.+?):text\((['"]?)([^'"]*)\2\)(.*)$""", re.DOTALL)


def has_custom_token(selector: str) -> bool:
    return any(token in selector for token in CUSTOM_TOKENS)


def split_has(selector: str) -> Optional[Tuple[str, str, str]]:
    """Split ``base:has(inner)after`` honouring nested parentheses.

    Returns ``None`` when ``:has(`` is absent or its parenthesis never closes.
    """

    start = selector.find(":has(")
    if start == -1:
        return None
    base = selector[:start]
    depth = 0
    index = start + len(":has(")
    inner: List[str] = []
    while index < len(selector):
        char = selector[index]
        if char == "(":
            depth += 1
        elif char == ")":
            if depth == 0:
                break
            depth -= 1
        inner.append(char)
        index += 1
    if index >= len(selector):
        return None
    return base, "".join(inner), selector[index + 1 :].strip()


class SelectorEngine:
    """Resolves selectors against the page reached through ``dom``."""

    def __init__(self, dom: Any) -> None:
        self.dom = dom

    async def query_one(self, selector: str, root: Any = None) -> Any | None:
        return (await self.resolve(selector, root)).first

    async def resolve(self, selector: str, root: Any = None) -> SelectorResult:
        try:
            native = await self._native(selector, root)
            if native:
                return SelectorResult(original_selector=selector, elements=native)
            if native is not None and not has_custom_token(selector):
                return SelectorResult(original_selector=selector)
            return await self._fallback(selector, root)
        except Exception as exc:
            log.warning("Selector resolution failed for %r: %s", selector, exc)
            return self._sentinel(selector, ERROR)

    async def _native(self, selector: str, root: Any) -> Optional[List[Any]]:
        """Native matches, or ``None`` when the page rejects the selector."""

        try:
            return await self.dom.query_all(selector, root)
        except SelectorSyntaxError:
            return None

    async def _fallback(self, selector: str, root: Any) -> SelectorResult:
        if ":nth-match(" in selector:
            return await self._resolve_nth_match(selector, root)
        if HAS_PRESENT.search(selector):
            return await self._resolve_has(selector, root)
        if CONTAINS_PRESENT.search(selector) and ":has(" not in selector:
            return await self._resolve_contains(selector, root)
        if ":text(" in selector:
            return await self._resolve_text(selector, root)
        log.warning("Unsupported selector: %s", selector)
        return self._sentinel(selector, UNSUPPORTED)

    async def _resolve_contains(self, selector: str, root: Any) -> SelectorResult:
        match = CONTAINS_PATTERN.match(selector)
        if not match:
            log.warning("Invalid :contains() syntax: %s", selector)
            return self._sentinel(selector, INVALID_CONTAINS_SYNTAX)
        base, _, needle, _ = match.groups()
        try:
            candidates = await self.dom.query_all(base, root)
            elements = [el for el in candidates if await self._text_includes(el, needle)]
        except Exception as exc:
            log.warning("Error processing :contains() selector %r: %s", selector, exc)
            return self._sentinel(selector, ERROR_IN_CONTAINS)
        return SelectorResult(
            original_selector=selector,
            elements=elements,
            used_fallback=True,
            effective_selector=f'{base} (text contains "{needle}")',
        )

    async def _resolve_has(self, selector: str, root: Any) -> SelectorResult:
        parts = split_has(selector)
        if parts is None:
            log.warning("Invalid :has() syntax: %s", selector)
            return self._sentinel(selector, INVALID_HAS_SYNTAX)
        base, inner, after = parts
        try:
            containers = await self.dom.query_all(base, root)
            elements: List[Any] = []
            for container in containers:
                try:
                    qualifies = await self._has_descendant(container, inner)
                except SelectorSyntaxError as exc:
                    log.warning("Error checking descendant selector %r: %s", inner, exc)
                    continue
                if not qualifies:
                    continue
                if not after:
                    elements.append(container)
                    continue
                try:
                    elements.extend(await self.dom.query_all(after, container))
                except SelectorSyntaxError as exc:
                    log.warning("Error applying nested selector %r: %s", after, exc)
                    elements.append(container)
        except Exception as exc:
            log.warning("Error processing :has() selector %r: %s", selector, exc)
            return self._sentinel(selector, ERROR_IN_HAS)
        return SelectorResult(
            original_selector=selector,
            elements=elements,
            used_fallback=True,
            effective_selector=f"{base} (has descendant: {inner})",
        )

    async def _has_descendant(self, container: Any, inner: str) -> bool:
        if ":contains(" not in inner:
            return bool(await self.dom.query_all(inner, container))
        match = INNER_CONTAINS_PATTERN.match(inner)
        if match:
            inner_base, _, needle, _ = match.groups()
            for descendant in await self.dom.query_all(inner_base, container):
                if await self._text_includes(descendant, needle):
                    return True
            return False
        # Inner selector is itself a bare :contains(); match globally, keep those inside.
        for element in (await self._resolve_contains(inner, None)).elements:
            if await self.dom.element_contains(container, element):
                return True
        return False

    async def _resolve_text(self, selector: str, root: Any) -> SelectorResult:
        match = TEXT_PATTERN.match(selector)
        if not match:
            return self._sentinel(selector, INVALID_TEXT_SYNTAX)
        base, _, needle, _ = match.groups()
        try:
            elements = []
            for element in await self.dom.query_all(base, root):
                direct = await self.dom.direct_text(element)
                if needle.lower() in direct.lower():
                    elements.append(element)
        except Exception as exc:
            log.warning("Error processing :text() selector %r: %s", selector, exc)
            return self._sentinel(selector, ERROR_IN_TEXT)
        return SelectorResult(
            original_selector=selector,
            elements=elements,
            used_fallback=True,
            effective_selector=f'{base} (direct text contains "{needle}")',
        )

    async def _resolve_nth_match(self, selector: str, root: Any) -> SelectorResult:
        match = NTH_MATCH_PATTERN.match(selector)
        if not match:
            negative = NTH_MATCH_ANY_INDEX.search(selector)
            if negative and int(negative.group(1)) < 1:
                log.warning("Invalid :nth-match() index in %s", selector)
                return self._sentinel(selector, INVALID_NTH_MATCH_INDEX)
            log.warning("Invalid :nth-match() syntax: %s", selector)
            return self._sentinel(selector, INVALID_NTH_MATCH_SYNTAX)
        base, raw_index, after = match.groups()
        index = int(raw_index)
        if index < 1:
            log.warning("Invalid :nth-match() index %s; must be a positive integer", raw_index)
            return self._sentinel(selector, INVALID_NTH_MATCH_INDEX)
        try:
            matches = (await self.resolve(base, root)).elements
            if len(matches) < index:
                return SelectorResult(
                    original_selector=selector,
                    used_fallback=True,
                    effective_selector=f"{base} (wanted {index}, found {len(matches)})",
                )
            target = matches[index - 1]
            after = after.strip()
            if after:
                try:
                    nested = await self.dom.query_all(after, target)
                except SelectorSyntaxError as exc:
                    log.warning("Error applying nested selector %r: %s", after, exc)
                else:
                    return SelectorResult(
                        original_selector=selector,
                        elements=nested,
                        used_fallback=True,
                        effective_selector=f"{base} ({index}th match) {after}",
                    )
        except Exception as exc:
            log.warning("Error processing :nth-match() selector %r: %s", selector, exc)
            return self._sentinel(selector, ERROR_IN_NTH_MATCH)
        return SelectorResult(
            original_selector=selector,
            elements=[target],
            used_fallback=True,
            effective_selector=f"{base} ({index}th match)",
        )

    async def _text_includes(self, element: Any, needle: str) -> bool:
        text = await self.dom.text_content(element)
        return needle.lower() in text.lower()

    @staticmethod
    def _sentinel(selector: str, tag: str) -> SelectorResult:
        return SelectorResult(original_selector=selector, used_fallback=True, effective_selector=tag)
