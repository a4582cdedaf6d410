"""
TEMPLATE INTERPRETER - resolve {{tokens}} inside lifecycle steps

Token families, checked in this order:
    {{id:booking}}            → "booking_3f9c..." (stable for the whole run)
    {{nowIso}}                → current UTC time (stable for the whole run)
    {{nowPlusMinutes:30}}     → current UTC time + 30 minutes (stable for the whole run)
    {{bookingId}}             → variables["bookingId"]
    {{booking.rows[0].id}}    → JSON-path lookup into the variables tree
"""

import json
import math
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from schemagate.core.pseudo_api.errors import TemplateResolutionError

TOKEN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
FULL_TOKEN = re.compile(r"^\{\{\s*([^}]+?)\s*\}\}$")
PATH_SEGMENT = re.compile(r"([^\[.\]]+)|\[(\d+)\]")

# Sentinel for "path does not exist", None is a legitimate value
MISSING = object()


# ============================================================================
# PATH LOOKUP
# ============================================================================


def path_segments(path: str) -> List[Union[str, int]]:
    """
    Split "a.b[0].c" into ["a", "b", 0, "c"]. A leading "$" or "$." is ignored.
    """
    cleaned = path.strip()
    if cleaned.startswith("$."):
        cleaned = cleaned[2:]
    elif cleaned.startswith("$"):
        cleaned = cleaned[1:]

    segments: List[Union[str, int]] = []
    for match in PATH_SEGMENT.finditer(cleaned):
        if match.group(1):
            segments.append(match.group(1))
        elif match.group(2):
            segments.append(int(match.group(2)))
    return segments


def get_by_path(root: Any, path: str, default: Any = MISSING) -> Any:
    current = root
    for segment in path_segments(path):
        if current is None:
            return default
        if isinstance(segment, int):
            if not isinstance(current, list) or segment >= len(current):
                return default
            current = current[segment]
            continue
        if not isinstance(current, dict) or segment not in current:
            return default
        current = current[segment]
    return current


def iso_now(offset_minutes: float = 0) -> str:
    now = datetime.now(timezone.utc)
    try:
        moment = now + timedelta(minutes=offset_minutes)
    except OverflowError:
        # Out of datetime range, fall back to no offset
        moment = now
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_text(value: Any) -> str:
    """Stringify a value for messages; None reads as an empty string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def embed_text(value: Any) -> str:
    """Stringify a token value spliced into a longer string; None reads as null."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


# ============================================================================
# INTERPRETER
# ============================================================================


class TemplateInterpreter:
    """
    One interpreter per run. Generated ids and timestamps are memoized so the
    same token always yields the same value within the run; variable lookups
    are not, because captures keep changing the variables bag.
    """

    def __init__(self, variables: Optional[Dict[str, Any]] = None):
        self.variables = variables if variables is not None else {}
        self._token_cache: Dict[str, Any] = {}

    def resolve(self, expression: str) -> Any:
        expr = expression.strip()
        if not expr:
            return ""

        if expr in self._token_cache:
            return self._token_cache[expr]

        if expr.startswith("id:"):
            tag = expr.split(":", 1)[1].strip() or "id"
            value = f"{tag}_{uuid.uuid4().hex[:27]}"
            self._token_cache[expr] = value
            return value

        if expr == "nowIso":
            value = iso_now()
            self._token_cache[expr] = value
            return value

        if expr.startswith("nowPlusMinutes:"):
            raw = expr.split(":", 1)[1].strip()
            try:
                minutes = float(raw)
            except ValueError:
                minutes = 0
            if not math.isfinite(minutes):
                minutes = 0
            value = iso_now(minutes)
            self._token_cache[expr] = value
            return value

        if expr in self.variables:
            return self.variables[expr]

        value = get_by_path(self.variables, expr)
        if value is not MISSING:
            return value

        raise TemplateResolutionError(f'Unresolved template token: "{{{{{expr}}}}}"')

    def interpolate_string(self, text: str) -> Any:
        full = FULL_TOKEN.match(text)
        if full:
            # A lone token keeps the underlying type
            return self.resolve(full.group(1))

        return TOKEN.sub(lambda match: embed_text(self.resolve(match.group(1))), text)

    def interpolate(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.interpolate_string(value)
        if isinstance(value, list):
            return [self.interpolate(entry) for entry in value]
        if isinstance(value, dict):
            return {key: self.interpolate(entry) for key, entry in value.items()}
        return value
