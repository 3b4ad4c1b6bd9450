"""Data structures for enhanced selector resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass(slots=True)
class SelectorResult:
    """Elements matched by a selector and how they were found."""

    original_selector: str
    elements: List[Any] = field(default_factory=list, repr=False)
    used_fallback: bool = False
    effective_selector: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.elements)

    @property
    def first(self) -> Any | None:
        return self.elements[0] if self.elements else None

    def to_dict(self) -> dict:
        return {
            "selector": self.original_selector,
            "count": self.count,
            "used_fallback": self.used_fallback,
            "effective_selector": self.effective_selector,
        }
