"""
Error taxonomy shared by the ledger API and the bar client.

ValidationError and SessionStateError are raised before anything is sent.
StockShortage and ConnectivityFailure end up on a failed queue entry.
PermissionDenied is not retryable.
"""

import re
from typing import Any, Dict, Iterable, List, Optional


class OpenBarError(Exception):
    """Base class. `str(err)` is always safe to show to a bartender."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(OpenBarError):
    pass


class RecipeCapacityExceeded(ValidationError):
    def __init__(self, overage_ml: float, capacity_ml: Optional[float] = None) -> None:
        self.overage_ml = float(overage_ml)
        self.capacity_ml = capacity_ml
        if capacity_ml is None:
            msg = f"Recipe exceeds cup capacity by {_fmt_qty(self.overage_ml)} ml"
        elif self.overage_ml > 0:
            msg = (
                f"Recipe exceeds cup capacity by {_fmt_qty(self.overage_ml)} ml "
                f"(available {_fmt_qty(capacity_ml)} ml)"
            )
        else:
            msg = f"Fixed lines fill the cup ({_fmt_qty(capacity_ml)} ml), no room left for the top-up"
        super().__init__(msg)


class MissingCategorySelection(ValidationError):
    def __init__(self, line_ids: Iterable[Any]) -> None:
        self.line_ids = list(line_ids)
        super().__init__(f"Missing ingredient selection for {len(self.line_ids)} recipe line(s)")


class StockShortage(OpenBarError):
    def __init__(self, shortages: List[Dict[str, Any]], message: Optional[str] = None) -> None:
        self.shortages = list(shortages or [])
        super().__init__(format_shortage_message(self.shortages) if self.shortages else (message or "Insufficient stock"))


class ConnectivityFailure(OpenBarError):
    def __init__(self, message: str = "no connection, saved locally") -> None:
        super().__init__(message)


class SessionStateError(OpenBarError):
    pass


class SessionExpired(SessionStateError):
    def __init__(self, message: str = "Open Bar Finished! Do not serve more drinks.") -> None:
        super().__init__(message)


class PermissionDenied(OpenBarError):
    pass


SHORTAGE_PREVIEW_COUNT = 3

# "...failed (400): {"detail": ...}" -> "...failed (400)"
_TRAILING_FRAGMENT = re.compile(r"[\s:,\-]*[\[{].*$", re.S)


def _fmt_qty(value: Any) -> str:
    try:
        return f"{round(float(value), 3):g}"
    except (TypeError, ValueError):
        return str(value)


def sanitize_message(message: Any, fallback: str = "Request failed") -> str:
    """Drop embedded JSON/array fragments and anything after the first line."""
    text = str(message or "").strip()
    text = _TRAILING_FRAGMENT.sub("", text).strip()
    if text:
        text = text.splitlines()[0].strip()
    return text or fallback


def format_shortage_message(shortages: List[Dict[str, Any]]) -> str:
    parts = []
    for s in shortages[:SHORTAGE_PREVIEW_COUNT]:
        name = s.get("ingredient_name") or s.get("ingredient_id") or "Unknown"
        parts.append(f"{name} (missing {_fmt_qty(s.get('missing', 0))})")
    msg = "Insufficient stock: " + ", ".join(parts)
    remaining = len(shortages) - SHORTAGE_PREVIEW_COUNT
    if remaining > 0:
        msg += f" +{remaining} more"
    return msg
