"""
Snapshot sanitization.

Before any before/after snapshot is stored, keys matching the
configured denylist are removed. The denylist is policy, read
from settings; nothing else in the codebase decides what is
sensitive.

Keys are normalized (lowercased, non-alphanumerics dropped) and
matched by substring, so "recoveryEmail", "recovery-email" and
"RECOVERY_EMAIL" are all caught by the marker "recovery_email".
"""

import re
from functools import lru_cache
from typing import Any, Iterable

_MAX_DEPTH = 20
_NON_ALNUM = re.compile(r"[^a-z0-9]")
_TRUNCATED = "***TRUNCATED***"
_MASK = "***MASKED***"


def _normalize(key: str) -> str:
    return _NON_ALNUM.sub("", key.lower())


@lru_cache(maxsize=128)
def _message_pattern(field: str) -> re.Pattern:
    """Pattern for ``field=value`` / ``"field": "value"`` pairs inside text."""
    return re.compile(
        rf'(["\']?{re.escape(field)}["\']?\s*[:=]\s*)["\']?[^"\'\s,;}}]*["\']?',
        re.IGNORECASE,
    )


class Sanitizer:
    """Strips denylisted fields from snapshots and masks them in messages."""

    def __init__(self, sensitive_fields: Iterable[str]):
        self.sensitive_fields = tuple(sensitive_fields)
        self._markers = tuple(
            m for m in (_normalize(f) for f in self.sensitive_fields) if m
        )

    def is_sensitive(self, key: str) -> bool:
        normalized = _normalize(str(key))
        return any(marker in normalized for marker in self._markers)

    def sanitize(self, value: Any, depth: int = 0) -> Any:
        """
        Return a JSON-safe copy of value with sensitive keys removed.

        Dicts lose any key that matches the denylist, at every depth.
        Lists are walked item by item. Anything nested deeper than
        the depth limit is replaced wholesale, since it cannot be
        inspected.
        """
        if depth >= _MAX_DEPTH:
            return _TRUNCATED
        if isinstance(value, dict):
            return {
                str(key): self.sanitize(val, depth + 1)
                for key, val in value.items()
                if not self.is_sensitive(key)
            }
        if isinstance(value, (list, tuple, set)):
            return [self.sanitize(item, depth + 1) for item in value]
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        # Dates, UUIDs, enums and the like are stored as text
        return str(value)

    def sanitize_snapshot(self, snapshot: Any) -> dict | None:
        if snapshot is None:
            return None
        if hasattr(snapshot, "model_dump"):
            snapshot = snapshot.model_dump(mode="json")
        if not isinstance(snapshot, dict):
            return {"value": self.sanitize(snapshot)}
        return self.sanitize(snapshot)

    def mask_message(self, message: str) -> str:
        """Mask ``secret=...`` style fragments inside free text."""
        masked = message
        for field in self.sensitive_fields:
            masked = _message_pattern(field).sub(rf"\g<1>{_MASK}", masked)
        return masked


def compute_changes(
    before: dict | None, after: dict | None
) -> list[dict[str, Any]]:
    """
    Ordered field-level diff between two sanitized snapshots.

    Fields keep the order they appear in ``before``; fields only
    present in ``after`` follow in their own order.
    """
    if before is None or after is None:
        return []

    changes = []
    for field in list(before) + [k for k in after if k not in before]:
        old_value = before.get(field)
        new_value = after.get(field)
        if old_value != new_value:
            changes.append({
                "field": field,
                "old_value": old_value,
                "new_value": new_value,
            })
    return changes
