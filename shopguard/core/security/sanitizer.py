# shopguard/core/security/sanitizer.py
"""
Input sanitization pipeline.

Applied to every free-text value before it is persisted or rendered:

1. truncate to the field's maximum length
2. strip control characters (tab, newline and carriage return survive)
3. scan for dangerous constructs; on a hit strip < > ' " instead of rejecting
4. rich-text fields go through an allow-list markup filter (bleach),
   every other field loses all markup
5. trim leading/trailing whitespace only, internal whitespace is kept

Nothing here raises on bad input. Values degrade instead.
"""

import html
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import bleach

logger = logging.getLogger(__name__)


DEFAULT_MAX_LENGTH = 1000

FIELD_LIMITS: Dict[str, int] = {
    "name": 200,
    "brand": 100,
    "category": 100,
    "custom_badge": 50,
    "badge": 50,
    "movement": 100,
    "diameter": 50,
    "material": 100,
    "water_resistance": 100,
    "color": 50,
    "size": 50,
    "selected_color": 50,
    "selected_size": 50,
    "description": 5000,
    "full_name": 200,
    "email": 320,
    "search": 200,
    "url": 2048,
}

RICH_TEXT_FIELDS = frozenset({"description"})

RICH_TEXT_TAGS = ["b", "i", "em", "strong", "p", "br"]

MIN_QUANTITY = 1
MAX_QUANTITY = 99

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_QUOTES_AND_BRACKETS = re.compile(r"[<>'\"]")
_EDGE_WHITESPACE = re.compile(r"^\s+|\s+$")
_EMAIL = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

DANGEROUS_PATTERNS = [
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
    re.compile(r"@import", re.IGNORECASE),
    re.compile(r"url\s*\(", re.IGNORECASE),
]

INJECTION_PATTERNS = [
    re.compile(r"union\s+select", re.IGNORECASE),
    re.compile(r"drop\s+table", re.IGNORECASE),
    re.compile(r"insert\s+into", re.IGNORECASE),
    re.compile(r"delete\s+from", re.IGNORECASE),
    re.compile(r"update\s+\w*\s*set", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
]


def field_limit(field: Optional[str]) -> int:
    if field is None:
        return DEFAULT_MAX_LENGTH
    return FIELD_LIMITS.get(field, DEFAULT_MAX_LENGTH)


def has_dangerous_pattern(value: str) -> bool:
    return any(pattern.search(value) for pattern in DANGEROUS_PATTERNS)


def detect_injection_attempt(value: Any) -> bool:
    """Heuristic SQL/JS injection check, used for monitoring only"""
    if not value or not isinstance(value, str):
        return False
    return any(pattern.search(value) for pattern in INJECTION_PATTERNS)


def sanitize_html(value: str) -> str:
    """Allow-listed markup: b, i, em, strong, p, br; no attributes"""
    return bleach.clean(value, tags=RICH_TEXT_TAGS, attributes={}, strip=True)


def strip_markup(value: str) -> str:
    """Drop every tag; plain fields store text, not HTML entities"""
    # Literal entities in the input survive the round trip as typed
    cleaned = bleach.clean(value.replace("&", "&amp;"), tags=[], attributes={}, strip=True)
    return html.unescape(cleaned)


@dataclass
class SanitizeResult:
    value: str
    flagged: bool = False
    truncated: bool = False


def inspect_text(
    value: Any,
    field: Optional[str] = None,
    max_length: Optional[int] = None,
    rich_text: Optional[bool] = None
) -> SanitizeResult:
    """
    Run the pipeline and report what happened along the way.

    Args:
        value: Raw input; anything that is not a string becomes ""
        field: Field name, selects the length limit and rich-text handling
        max_length: Explicit limit overriding the field table
        rich_text: Force rich-text handling on or off
    """
    if not value or not isinstance(value, str):
        return SanitizeResult(value="")

    limit = max_length if max_length is not None else field_limit(field)
    if rich_text is None:
        rich_text = field in RICH_TEXT_FIELDS

    truncated = len(value) > limit
    text = value[:limit]
    text = _CONTROL_CHARS.sub("", text)

    flagged = has_dangerous_pattern(text)
    if flagged:
        logger.warning(f"🚨 Dangerous pattern in field '{field or 'text'}': {value[:50]!r}")
        text = _QUOTES_AND_BRACKETS.sub("", text)

    text = sanitize_html(text) if rich_text else strip_markup(text)
    text = _EDGE_WHITESPACE.sub("", text)

    return SanitizeResult(value=text, flagged=flagged, truncated=truncated)


def sanitize_text(
    value: Any,
    field: Optional[str] = None,
    max_length: Optional[int] = None,
    rich_text: Optional[bool] = None
) -> str:
    """Sanitize a single free-text value. Never raises."""
    return inspect_text(value, field=field, max_length=max_length, rich_text=rich_text).value


def sanitize_optional(value: Any, field: str) -> Optional[str]:
    """Sanitize, mapping empty results to None (optional columns)"""
    cleaned = sanitize_text(value, field=field)
    return cleaned or None


def sanitize_email(value: Any) -> str:
    """Lower-case and trim; returns "" when the address is not valid"""
    if not value or not isinstance(value, str):
        return ""
    cleaned = value.lower().strip()[:FIELD_LIMITS["email"]]
    if not _EMAIL.match(cleaned):
        logger.warning(f"⚠️ Invalid email supplied: {value[:10]!r}")
        return ""
    return cleaned


def sanitize_url(value: Any) -> str:
    """Keep http(s) URLs only"""
    cleaned = sanitize_text(value, field="url")
    if not cleaned:
        return ""
    parsed = urlparse(cleaned)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ""
    return cleaned


def coerce_quantity(value: Any) -> int:
    """Clamp a cart quantity into 1..99; garbage becomes 1"""
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return MIN_QUANTITY
    return max(MIN_QUANTITY, min(MAX_QUANTITY, quantity))


def _non_negative(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value >= 0 else None


def sanitize_product_data(data: Any) -> Dict[str, Any]:
    """Sanitize a product payload field by field"""
    if not isinstance(data, dict):
        return {}

    def clean_list(items: Any, field: str) -> List[str]:
        if not isinstance(items, list):
            return []
        return [c for c in (sanitize_text(i, field=field) for i in items) if c]

    return {
        "name": sanitize_text(data.get("name"), field="name"),
        "brand": sanitize_text(data.get("brand"), field="brand"),
        "category": sanitize_text(data.get("category"), field="category"),
        "description": sanitize_optional(data.get("description"), "description"),
        "price": _non_negative(data.get("price")) or 0.0,
        "original_price": _non_negative(data.get("original_price")),
        "custom_badge": sanitize_optional(data.get("custom_badge"), "custom_badge"),
        "movement": sanitize_optional(data.get("movement"), "movement"),
        "diameter": sanitize_optional(data.get("diameter"), "diameter"),
        "material": sanitize_optional(data.get("material"), "material"),
        "water_resistance": sanitize_optional(data.get("water_resistance"), "water_resistance"),
        "images": [u for u in (sanitize_url(i) for i in (data.get("images") or []) if isinstance(i, str)) if u],
        "colors": clean_list(data.get("colors"), "color"),
        "sizes": clean_list(data.get("sizes"), "size"),
    }


ThreatReporter = Callable[[str, Dict[str, Any]], None]


class Sanitizer:
    """
    Pipeline front-end that reports pattern hits.

    The functions above stay pure; this wrapper lets the monitor see
    what was degraded without the pipeline itself knowing about it.
    """

    def __init__(self, on_threat: Optional[ThreatReporter] = None):
        self._on_threat = on_threat
        self.flagged_count = 0

    def text(self, value: Any, field: Optional[str] = None, max_length: Optional[int] = None) -> str:
        result = inspect_text(value, field=field, max_length=max_length)
        if result.flagged or detect_injection_attempt(value):
            self.flagged_count += 1
            if self._on_threat:
                self._on_threat(
                    "Dangerous input pattern",
                    {"field": field or "text", "sample": str(value)[:50]}
                )
        return result.value

    def optional(self, value: Any, field: str) -> Optional[str]:
        return self.text(value, field=field) or None

    def email(self, value: Any) -> str:
        return sanitize_email(value)

    def quantity(self, value: Any) -> int:
        return coerce_quantity(value)
