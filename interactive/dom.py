"""Bridge between the walkthrough runtime and the live page document."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from playwright.async_api import ElementHandle, Error as PlaywrightError, JSHandle, Page

from .errors import ActionError, SelectorSyntaxError
from .page_stability import settle

log = logging.getLogger(__name__)

COMPLETION_EVENT = "interactive-action-completed"
HIGHLIGHT_CLASS = "interactive-highlighted"
OUTLINE_CLASS = "interactive-highlight-outline"
COMPLETED_CLASS = "completed"

_SYNTAX_MARKERS = ("syntaxerror", "is not a valid selector", "not a valid selector")

NATIVE_QUERY_SCRIPT = """
({root, selector}) => Array.from((root || document).querySelectorAll(selector))
"""

DIRECT_TEXT_SCRIPT = """
(el) => Array.from(el.childNodes)
    .filter(node => node.nodeType === Node.TEXT_NODE)
    .map(node => node.textContent || '')
    .join('')
    .trim()
"""

RENDERED_TEXT_SCRIPT = """
(el) => {
  const collect = (node) => {
    let text = '';
    for (const child of node.childNodes) {
      if (child.nodeType === Node.TEXT_NODE) {
        text += (child.textContent || '').trim() + ' ';
      } else if (child.nodeType === Node.ELEMENT_NODE) {
        text += collect(child) + ' ';
      }
    }
    return text.trim();
  };
  return collect(el);
}
"""

ATTRIBUTES_SCRIPT = """
(el) => {
  const attrs = {};
  for (const attr of Array.from(el.attributes)) {
    attrs[attr.name] = attr.value;
  }
  return attrs;
}
"""

CONTAINS_SCRIPT = "(container, el) => container === el || container.contains(el)"

CLICK_SCRIPT = "(el) => el.click()"

HIGHLIGHT_STYLES = """
.interactive-highlighted { position: relative; z-index: 1; }
.interactive-highlight-outline {
  position: absolute;
  top: var(--highlight-top);
  left: var(--highlight-left);
  width: var(--highlight-width);
  height: var(--highlight-height);
  border: 2px solid #ff8833;
  border-radius: 4px;
  pointer-events: none;
  z-index: 9999;
  animation: interactive-highlight-pulse 2s ease-in-out forwards;
}
@keyframes interactive-highlight-pulse {
  0% { opacity: 0; } 20% { opacity: 1; } 80% { opacity: 1; } 100% { opacity: 0; }
}
"""

HIGHLIGHT_SCRIPT = """
(el, {durationMs, highlightClass, outlineClass}) => {
  el.classList.add(highlightClass);
  const outline = document.createElement('div');
  outline.className = outlineClass;
  const rect = el.getBoundingClientRect();
  const scrollTop = window.scrollY || document.documentElement.scrollTop;
  const scrollLeft = window.scrollX || document.documentElement.scrollLeft;
  outline.style.setProperty('--highlight-top', `${rect.top + scrollTop - 4}px`);
  outline.style.setProperty('--highlight-left', `${rect.left + scrollLeft - 4}px`);
  outline.style.setProperty('--highlight-width', `${rect.width + 8}px`);
  outline.style.setProperty('--highlight-height', `${rect.height + 8}px`);
  document.body.appendChild(outline);
  setTimeout(() => {
    el.classList.remove(highlightClass);
    if (outline.parentNode) {
      outline.parentNode.removeChild(outline);
    }
  }, durationMs);
}
"""

# Writes through the prototype setter so framework value trackers see a change.
SET_VALUE_SCRIPT = """
(el, value) => {
  const tag = el.tagName.toLowerCase();
  const type = (el.type || '').toLowerCase();
  const setNative = (proto) => {
    const descriptor = Object.getOwnPropertyDescriptor(proto, 'value');
    if (descriptor && descriptor.set) {
      descriptor.set.call(el, value);
    } else {
      el.value = value;
    }
    if (el._valueTracker) {
      el._valueTracker.setValue('');
    }
  };
  if (tag === 'input') {
    if (type === 'checkbox' || type === 'radio') {
      el.checked = value !== 'false' && value !== '0' && value !== '';
    } else {
      setNative(window.HTMLInputElement.prototype);
    }
  } else if (tag === 'textarea') {
    setNative(window.HTMLTextAreaElement.prototype);
  } else if (tag === 'select') {
    el.value = value;
  } else {
    el.textContent = value;
  }
  return tag;
}
"""

FORM_EVENTS_SCRIPT = """
(el, names) => {
  for (const name of names) {
    const event = (name === 'focus' || name === 'blur')
      ? new FocusEvent(name, {bubbles: true})
      : new Event(name, {bubbles: true});
    el.dispatchEvent(event);
  }
  return names;
}
"""

PUSH_ROUTE_SCRIPT = """
(path) => {
  window.history.pushState({}, '', path);
  window.dispatchEvent(new PopStateEvent('popstate', {state: {}}));
}
"""

OPEN_WINDOW_SCRIPT = "(url) => { window.open(url, '_blank', 'noopener,noreferrer'); }"

MARK_COMPLETED_SCRIPT = """
([elements, className]) => {
  for (const el of elements) {
    el.classList.add(className);
    el.setAttribute('data-completed', 'true');
    if ('disabled' in el) {
      el.disabled = true;
    }
  }
}
"""

CLEAR_COMPLETED_SCRIPT = """
([elements, className]) => {
  for (const el of elements) {
    el.classList.remove(className);
    el.removeAttribute('data-completed');
    if ('disabled' in el) {
      el.disabled = false;
    }
  }
}
"""

DISPATCH_COMPLETION_SCRIPT = """
([element, {eventName, state}]) => {
  document.dispatchEvent(new CustomEvent(eventName, {detail: {element, state}}));
}
"""

FORM_CONTROL_TAGS = frozenset({"input", "textarea", "select"})


def form_event_sequence(tag: str) -> List[str]:
    """Events dispatched after a value write: focus, input, change, blur."""

    if tag in FORM_CONTROL_TAGS:
        return ["focus", "input", "change", "blur"]
    return ["focus", "blur"]


def _is_syntax_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _SYNTAX_MARKERS)


async def _handles_from_array(array_handle: JSHandle) -> List[ElementHandle]:
    properties = await array_handle.get_properties()
    elements: List[ElementHandle] = []
    for key in sorted((key for key in properties if key.isdigit()), key=int):
        element = properties[key].as_element()
        if element is not None:
            elements.append(element)
    await array_handle.dispose()
    return elements


class DomBridge:
    """All reads and writes against the shared document go through here.

    The bridge owns the highlight style-injection guard, so its lifetime is
    tied to the page it wraps rather than to the process.
    """

    def __init__(self, page: Page, *, settle_ms: int = 100) -> None:
        self.page = page
        self.settle_ms = settle_ms
        self._styles_injected = False

    async def query_all(self, selector: str, root: Optional[ElementHandle] = None) -> List[ElementHandle]:
        """Native ``querySelectorAll`` scoped to the document or ``root``."""

        try:
            array_handle = await self.page.evaluate_handle(
                NATIVE_QUERY_SCRIPT, {"root": root, "selector": selector}
            )
        except PlaywrightError as exc:
            if _is_syntax_error(exc):
                raise SelectorSyntaxError(selector, str(exc).splitlines()[0]) from exc
            raise
        return await _handles_from_array(array_handle)

    async def text_content(self, element: ElementHandle) -> str:
        return (await element.text_content()) or ""

    async def direct_text(self, element: ElementHandle) -> str:
        return await element.evaluate(DIRECT_TEXT_SCRIPT)

    async def rendered_text(self, element: ElementHandle) -> str:
        return await element.evaluate(RENDERED_TEXT_SCRIPT)

    async def attributes(self, element: ElementHandle) -> Dict[str, str]:
        return await element.evaluate(ATTRIBUTES_SCRIPT)

    async def element_contains(self, container: ElementHandle, element: ElementHandle) -> bool:
        return bool(await container.evaluate(CONTAINS_SCRIPT, element))

    async def click(self, element: ElementHandle) -> None:
        try:
            await element.evaluate(CLICK_SCRIPT)
        except PlaywrightError as exc:
            raise ActionError(f"Click failed: {exc}") from exc

    async def highlight(self, element: ElementHandle, duration_ms: int) -> None:
        await self._ensure_styles()
        try:
            await element.scroll_into_view_if_needed(timeout=duration_ms)
        except PlaywrightError as exc:
            log.debug("Could not scroll highlight target into view: %s", exc)
        try:
            await element.evaluate(
                HIGHLIGHT_SCRIPT,
                {"durationMs": duration_ms, "highlightClass": HIGHLIGHT_CLASS, "outlineClass": OUTLINE_CLASS},
            )
        except PlaywrightError as exc:
            raise ActionError(f"Highlight failed: {exc}") from exc

    async def set_form_value(self, element: ElementHandle, value: str) -> str:
        try:
            return await element.evaluate(SET_VALUE_SCRIPT, value)
        except PlaywrightError as exc:
            raise ActionError(f"Setting value failed: {exc}") from exc

    async def dispatch_form_events(self, element: ElementHandle, tag: str) -> List[str]:
        try:
            return await element.evaluate(FORM_EVENTS_SCRIPT, form_event_sequence(tag))
        except PlaywrightError as exc:
            raise ActionError(f"Dispatching form events failed: {exc}") from exc

    async def location_path(self) -> str:
        return urlsplit(self.page.url).path or "/"

    async def push_route(self, path: str) -> None:
        try:
            await self.page.evaluate(PUSH_ROUTE_SCRIPT, path)
        except PlaywrightError as exc:
            raise ActionError(f"Navigation to {path} failed: {exc}", details={"path": path}) from exc

    async def open_external(self, url: str) -> None:
        try:
            await self.page.evaluate(OPEN_WINDOW_SCRIPT, url)
        except PlaywrightError as exc:
            raise ActionError(f"Opening {url} failed: {exc}", details={"url": url}) from exc

    async def mark_completed(self, elements: Sequence[ElementHandle]) -> None:
        await self.page.evaluate(MARK_COMPLETED_SCRIPT, [list(elements), COMPLETED_CLASS])

    async def clear_completed(self, elements: Sequence[ElementHandle]) -> None:
        await self.page.evaluate(CLEAR_COMPLETED_SCRIPT, [list(elements), COMPLETED_CLASS])

    async def dispatch_completion_event(self, element: Optional[ElementHandle], state: str) -> None:
        await self.page.evaluate(
            DISPATCH_COMPLETION_SCRIPT,
            [element, {"eventName": COMPLETION_EVENT, "state": state}],
        )

    async def settle(self) -> None:
        await settle(self.page, self.settle_ms)

    async def _ensure_styles(self) -> None:
        if self._styles_injected:
            return
        await self.page.add_style_tag(content=HIGHLIGHT_STYLES)
        self._styles_injected = True
