"""Heuristics deciding whether a step parameter still holds filler instead of real data.

The checks are approximate by nature, so they live behind a small protocol and every
pattern list is a constructor argument. Callers that know their domain better can pass
their own policy to the validator and the coordinator.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Protocol


OBVIOUS_MARKERS = ("example", "placeholder", "extracted_from", "extracted_", "extract_from_step", "required")
GENERIC_PATTERNS = (
    r"^test\s+\w*",
    r"^example\s+\w*",
    r"^default\s+\w*",
    r"^sample\s+\w*",
    r"^placeholder\s+\w*",
    r"^facility\d+$",
    r"^shipment\d+$",
    r"^contract\d+$",
    r"^material type$",
    r"^<[^>]+>$",
    r"^\{\{.*\}\}$",
)
ROUND_NUMBERS = ("0", "1", "10", "50", "100", "123")
SIZE_FIELD_HINTS = ("estimated_size", "heating_value", "size", "amount", "quantity")

BACK_REFERENCE_RE = re.compile(r"^\$(step-\d+)(?:\.(.+))?$")
_STEP_MENTION_RE = re.compile(r"(?:from[_\s]step|extract.*step)[_\s-]*(\d+)?", re.IGNORECASE)
_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ][\d:.]+(?:Z|[+-]\d{2}:?\d{2})?)?$")


class PlaceholderPolicy(Protocol):
    def is_placeholder(self, name: str, value: Any) -> bool:
        ...

    def referenced_step(self, value: Any) -> Optional[int]:
        ...


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


class DefaultPlaceholderPolicy:
    def __init__(
        self,
        *,
        markers: Iterable[str] = OBVIOUS_MARKERS,
        patterns: Iterable[str] = GENERIC_PATTERNS,
        round_numbers: Iterable[str] = ROUND_NUMBERS,
        size_fields: Iterable[str] = SIZE_FIELD_HINTS,
        stale_date_days: int = 365,
        now: Optional[datetime] = None,
    ) -> None:
        self.markers = tuple(m.lower() for m in markers)
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self.round_numbers = set(round_numbers)
        self.size_fields = tuple(f.lower() for f in size_fields)
        self.stale_date_days = max(1, stale_date_days)
        self._now = now

    def is_placeholder(self, name: str, value: Any) -> bool:
        if is_empty(value):
            return True
        if isinstance(value, bool):
            return False
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, (int, float)):
            return self._is_round_size(name, str(value))
        if not isinstance(value, str):
            return False
        text = value.strip()
        lowered = text.lower()
        if any(marker in lowered for marker in self.markers):
            return True
        if any(p.search(text) for p in self.patterns):
            return True
        if self._is_stale_date(text):
            return True
        return self._is_round_size(name, text)

    def referenced_step(self, value: Any) -> Optional[int]:
        """Return the step order a value points back to, if it looks like a back-reference."""
        if not isinstance(value, str):
            return None
        ref = BACK_REFERENCE_RE.match(value.strip())
        if ref:
            return int(ref.group(1).split("-", 1)[1])
        mention = _STEP_MENTION_RE.search(value)
        if mention and mention.group(1):
            return int(mention.group(1))
        return None

    def _is_round_size(self, name: str, text: str) -> bool:
        lowered = (name or "").lower()
        if not any(hint in lowered for hint in self.size_fields):
            return False
        return text in self.round_numbers

    def _is_stale_date(self, text: str) -> bool:
        match = _DATE_RE.match(text)
        if not match:
            return False
        try:
            parsed = datetime.strptime(match.group(1), "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            return False
        now = self._now or datetime.now(timezone.utc)
        return parsed < now - timedelta(days=self.stale_date_days)
