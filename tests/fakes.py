"""In-memory stand-ins for the page used across the test-suite.

``FakeDocument`` implements the same async surface as ``DomBridge`` on top of
a tiny element tree. Its selector matcher understands only plain CSS (tags,
ids, classes, attribute tests, ``:not()``, descendant combinators and comma
lists) and rejects everything else the way a browser would, so the custom
pseudo-selectors always go through the Python fallbacks.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlsplit, urlunsplit

from interactive.dom import COMPLETED_CLASS, form_event_sequence
from interactive.errors import SelectorSyntaxError

Node = Union["FakeElement", str]


class FakeElement:
    def __init__(self, tag: str, attrs: Optional[Dict[str, str]] = None, children: Optional[List[Node]] = None):
        self.tag = tag.lower()
        self.attrs: Dict[str, str] = dict(attrs or {})
        self.children: List[Node] = []
        self.parent: Optional[FakeElement] = None
        self.value: str = self.attrs.get("value", "")
        self.checked = False
        self.events: List[str] = []
        self.clicks = 0
        self.on_click: Optional[Callable[["FakeElement"], None]] = None
        for child in children or []:
            self.append(child)

    def __repr__(self) -> str:
        ident = f"#{self.attrs['id']}" if "id" in self.attrs else ""
        return f"<{self.tag}{ident}>"

    def append(self, child: Node) -> Node:
        if isinstance(child, FakeElement):
            child.parent = self
        self.children.append(child)
        return child

    @property
    def classes(self) -> List[str]:
        return self.attrs.get("class", "").split()

    def add_class(self, name: str) -> None:
        if name not in self.classes:
            self.attrs["class"] = " ".join(self.classes + [name])

    def remove_class(self, name: str) -> None:
        self.attrs["class"] = " ".join(c for c in self.classes if c != name)

    def element_children(self) -> List["FakeElement"]:
        return [child for child in self.children if isinstance(child, FakeElement)]

    def descendants(self) -> List["FakeElement"]:
        found: List[FakeElement] = []
        for child in self.element_children():
            found.append(child)
            found.extend(child.descendants())
        return found

    def ancestors(self) -> List["FakeElement"]:
        chain = []
        node = self.parent
        while node is not None:
            chain.append(node)
            node = node.parent
        return chain

    def text_content(self) -> str:
        return "".join(child if isinstance(child, str) else child.text_content() for child in self.children)

    def direct_text(self) -> str:
        return "".join(child for child in self.children if isinstance(child, str)).strip()

    def rendered_text(self) -> str:
        text = ""
        for child in self.children:
            if isinstance(child, str):
                text += child.strip() + " "
            else:
                text += child.rendered_text() + " "
        return text.strip()


def h(tag: str, attrs: Optional[Dict[str, str]] = None, *children: Node) -> FakeElement:
    """Build an element: ``h("div", {"class": "x"}, "text", h("span"))``."""

    return FakeElement(tag, attrs, list(children))


# ---------------------------------------------------------------------------
# selector matching

_IDENT = r"-?[_a-zA-Z][\w-]*"
_TAG = re.compile(rf"^(\*|{_IDENT})")
_ID = re.compile(rf"^#({_IDENT})")
_CLASS = re.compile(rf"^\.({_IDENT})")
_ATTR = re.compile(rf"""^\[\s*({_IDENT})\s*(?:=\s*(?:"([^"]*)"|'([^']*)'|({_IDENT})))?\s*\]""")


def _split_top_level(text: str, separator: Callable[[str], bool]) -> List[str]:
    parts: List[str] = []
    depth = 0
    quote = ""
    current = ""
    for char in text:
        if quote:
            current += char
            if char == quote:
                quote = ""
            continue
        if depth == 0 and separator(char):
            parts.append(current)
            current = ""
            continue
        if char in "\"'":
            quote = char
        elif char in "([":
            depth += 1
        elif char in ")]":
            depth -= 1
        current += char
    parts.append(current)
    return parts


def _parse_compound(text: str, selector: str) -> List[Callable[[FakeElement], bool]]:
    tests: List[Callable[[FakeElement], bool]] = []
    rest = text
    match = _TAG.match(rest)
    if match:
        tag = match.group(1).lower()
        if tag != "*":
            tests.append(lambda el, tag=tag: el.tag == tag)
        rest = rest[match.end():]
    while rest:
        if match := _ID.match(rest):
            tests.append(lambda el, v=match.group(1): el.attrs.get("id") == v)
        elif match := _CLASS.match(rest):
            tests.append(lambda el, v=match.group(1): v in el.classes)
        elif match := _ATTR.match(rest):
            name = match.group(1)
            value = next((g for g in match.groups()[1:] if g is not None), None)
            if value is None:
                tests.append(lambda el, n=name: n in el.attrs)
            else:
                tests.append(lambda el, n=name, v=value: el.attrs.get(n) == v)
        elif rest.startswith(":not("):
            inner = _split_top_level(rest[len(":not("):], lambda c: c == ")")
            if len(inner) < 2:
                raise SelectorSyntaxError(selector, "unbalanced :not()")
            negated = _parse_compound(inner[0].strip(), selector)
            tests.append(lambda el, negated=negated: not all(test(el) for test in negated))
            rest = rest[len(":not(") + len(inner[0]) + 1:]
            continue
        else:
            raise SelectorSyntaxError(selector, f"unsupported token at {rest!r}")
        rest = rest[match.end():]
    if not tests and not _TAG.match(text):
        raise SelectorSyntaxError(selector, "empty compound")
    return tests


def _parse_complex(text: str, selector: str) -> List[List[Callable[[FakeElement], bool]]]:
    compounds = [part for part in _split_top_level(text.strip(), str.isspace) if part]
    if not compounds:
        raise SelectorSyntaxError(selector, "empty selector")
    for part in compounds:
        if part in {">", "+", "~"}:
            raise SelectorSyntaxError(selector, f"combinator {part} not supported")
    return [_parse_compound(part, selector) for part in compounds]


def _matches_compound(el: FakeElement, tests: List[Callable[[FakeElement], bool]]) -> bool:
    return all(test(el) for test in tests)


def _matches_complex(el: FakeElement, compounds: List[List[Callable[[FakeElement], bool]]]) -> bool:
    if not _matches_compound(el, compounds[-1]):
        return False
    remaining = compounds[:-1]
    node = el.parent
    while remaining and node is not None:
        if _matches_compound(node, remaining[-1]):
            remaining = remaining[:-1]
        node = node.parent
    return not remaining


def compile_selector(selector: str) -> Callable[[FakeElement], bool]:
    if not selector or not selector.strip():
        raise SelectorSyntaxError(selector, "empty selector")
    branches = [_parse_complex(part, selector) for part in _split_top_level(selector, lambda c: c == ",")]
    return lambda el: any(_matches_complex(el, branch) for branch in branches)


# ---------------------------------------------------------------------------
# bridge surface


class FakeDocument:
    """Implements the ``DomBridge`` surface against a ``FakeElement`` tree."""

    def __init__(self, body: FakeElement, url: str = "http://localhost:3000/") -> None:
        self.html = h("html", {}, body)
        self.body = body
        self.url = url
        self.calls: List[tuple] = []
        self.settles = 0
        self.completion_events: List[tuple] = []
        self.queries: List[str] = []

    def _record(self, *call: Any) -> None:
        self.calls.append(call)

    async def query_all(self, selector: str, root: Optional[FakeElement] = None) -> List[FakeElement]:
        self.queries.append(selector)
        matcher = compile_selector(selector)
        scope = root if root is not None else self.html
        return [el for el in scope.descendants() if matcher(el)]

    async def text_content(self, element: FakeElement) -> str:
        return element.text_content()

    async def direct_text(self, element: FakeElement) -> str:
        return element.direct_text()

    async def rendered_text(self, element: FakeElement) -> str:
        return element.rendered_text()

    async def attributes(self, element: FakeElement) -> Dict[str, str]:
        return dict(element.attrs)

    async def element_contains(self, container: FakeElement, element: FakeElement) -> bool:
        return container is element or container in element.ancestors()

    async def click(self, element: FakeElement) -> None:
        self._record("click", element)
        element.clicks += 1
        if element.on_click is not None:
            element.on_click(element)

    async def highlight(self, element: FakeElement, duration_ms: int) -> None:
        self._record("highlight", element)

    async def set_form_value(self, element: FakeElement, value: str) -> str:
        self._record("set_value", element, value)
        if element.tag == "input" and element.attrs.get("type", "").lower() in {"checkbox", "radio"}:
            element.checked = value not in {"false", "0", ""}
        elif element.tag in {"input", "textarea", "select"}:
            element.value = value
        else:
            element.children = [value]
        return element.tag

    async def dispatch_form_events(self, element: FakeElement, tag: str) -> List[str]:
        names = form_event_sequence(tag)
        element.events.extend(names)
        return names

    async def location_path(self) -> str:
        return urlsplit(self.url).path or "/"

    async def push_route(self, path: str) -> None:
        self._record("push_route", path)
        parts = urlsplit(self.url)
        self.url = urlunsplit((parts.scheme, parts.netloc, path, "", ""))

    async def open_external(self, url: str) -> None:
        self._record("open_external", url)

    async def mark_completed(self, elements: List[FakeElement]) -> None:
        for element in elements:
            element.add_class(COMPLETED_CLASS)
            element.attrs["data-completed"] = "true"

    async def clear_completed(self, elements: List[FakeElement]) -> None:
        for element in elements:
            element.remove_class(COMPLETED_CLASS)
            element.attrs.pop("data-completed", None)

    async def dispatch_completion_event(self, element: Optional[FakeElement], state: str) -> None:
        self.completion_events.append((element, state))

    async def settle(self) -> None:
        self.settles += 1
