"""Tolerant parsing of generation output.

Model output is treated as untrusted text. Structured output goes through
an ordered list of parsers, each a pure function returning ``None`` on a
miss; the first hit wins. When every tier misses, the raw text is kept
as a degraded result instead of being thrown away.
"""

import json
import re
from typing import Any, Callable, Iterable, List, NamedTuple, Optional, Sequence

from json_repair import repair_json

from ..schemas.results import ExtractedItem

ParseTier = Callable[[str], Optional[Any]]

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_OUTER_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]+|\d+[.)])\s*")

# Keys under which models tend to nest the list we asked for.
LIST_KEYS = ("items", "quotes", "positions", "arguments", "sections", "units")

# Balanced-substring candidates tried before giving up.
_MAX_BALANCED_CANDIDATES = 20


class ParseResult(NamedTuple):
    value: Any
    tier: str

    @property
    def degraded(self) -> bool:
        return self.tier == "raw"


def _loads_repaired(text: str) -> Optional[Any]:
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(repair_json(text))
    except ValueError:
        return None


def parse_direct(raw: str) -> Optional[Any]:
    """Tier 1: the whole output is JSON."""
    try:
        return json.loads(raw.strip())
    except ValueError:
        return None


def parse_fenced(raw: str) -> Optional[Any]:
    """Tier 2: JSON inside a markdown code fence."""
    match = _FENCE_RE.search(raw)
    if not match:
        return None
    return _loads_repaired(match.group(1))


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the bracket matching ``text[start]``, string-aware."""
    stack = []
    in_string = False
    escaped = False
    pairs = {"{": "}", "[": "]"}
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return i + 1
    return None


def parse_balanced(raw: str) -> Optional[Any]:
    """Tier 3: the first balanced ``{...}`` or ``[...]`` substring."""
    tried = 0
    for i, ch in enumerate(raw):
        if ch not in "{[":
            continue
        end = _balanced_end(raw, i)
        if end is None:
            continue
        value = _loads_repaired(raw[i:end])
        if isinstance(value, (dict, list)):
            return value
        tried += 1
        if tried >= _MAX_BALANCED_CANDIDATES:
            break
    return None


PARSE_TIERS: Sequence[tuple] = (
    ("direct", parse_direct),
    ("fenced", parse_fenced),
    ("balanced", parse_balanced),
)


def parse_structured(
    raw: str,
    accept: Callable[[Any], bool] = lambda v: isinstance(v, (dict, list)),
    tiers: Sequence[tuple] = PARSE_TIERS,
) -> ParseResult:
    """Run *raw* through the tiers; a hit must also satisfy *accept*.

    Returns a ``raw`` tier result (value = the stripped text) when no
    tier produces an acceptable value.
    """
    for name, tier in tiers:
        value = tier(raw)
        if value is not None and accept(value):
            return ParseResult(value, name)
    return ParseResult(raw.strip(), "raw")


def extract_list(value: Any, keys: Iterable[str] = LIST_KEYS) -> Optional[list]:
    """The list inside a parsed value: the value itself or a known wrapper key."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in keys:
            if isinstance(value.get(key), list):
                return value[key]
    return None


def has_list(value: Any) -> bool:
    return extract_list(value) is not None


def clean_prose(raw: str) -> str:
    """Strip a code fence wrapping an entire prose answer."""
    text = (raw or "").strip()
    match = _OUTER_FENCE_RE.match(text)
    if match:
        text = match.group(1).strip()
    return text


def raw_lines(raw: str) -> List[str]:
    """Non-empty lines with bullets and numbering removed."""
    lines = []
    for line in (raw or "").splitlines():
        line = _BULLET_RE.sub("", line).strip().strip('"').strip()
        if line:
            lines.append(line)
    return lines


def _first_str(record: dict, keys: Sequence[str]) -> str:
    for key in keys:
        val = record.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return ""


def coerce_items(
    records: Iterable[Any],
    default_author: str = "",
    default_source: str = "",
) -> List[ExtractedItem]:
    """Map loosely shaped records (quotes, positions, arguments) onto ExtractedItem.

    Records without usable text are skipped.
    """
    items = []
    for record in records:
        if isinstance(record, str):
            text = record.strip()
            if text:
                items.append(ExtractedItem(
                    text=text, author=default_author, source_label=default_source,
                ))
            continue
        if not isinstance(record, dict):
            continue

        text = _first_str(record, ("quote", "text", "position", "conclusion", "claim"))
        if not text:
            continue

        note = _first_str(record, ("topic", "context", "significance", "note"))
        premises = record.get("premises")
        if isinstance(premises, list):
            premises = [str(p).strip() for p in premises if str(p).strip()]
            if premises:
                note = "Premises: " + "; ".join(premises)

        items.append(ExtractedItem(
            text=text,
            author=_first_str(record, ("author",)) or default_author,
            source_label=_first_str(record, ("source", "section")) or default_source,
            note=note,
        ))
    return items


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def has_outline(value: Any) -> bool:
    """A single section object, or a wrapper holding a list of them."""
    if isinstance(value, dict) and _first_str(value, ("title", "heading")):
        return True
    return has_list(value)


def coerce_outline(value: Any, default_title: str = "") -> List[ExtractedItem]:
    """Map outline output onto items: title as text, description as note, themes kept.

    Accepts one section object or a list of them. Sections without a
    title take *default_title*; sections with neither title nor
    description are skipped.
    """
    records = [value] if isinstance(value, dict) and not has_list(value) else extract_list(value) or []
    items = []
    for record in records:
        if not isinstance(record, dict):
            continue
        title = _first_str(record, ("title", "heading")) or default_title
        description = _first_str(record, ("description", "summary", "role"))
        if not title and not description:
            continue
        items.append(ExtractedItem(
            text=title or description[:80],
            source_label=default_title,
            note=description,
            themes=_str_list(record.get("keyThemes") or record.get("themes") or record.get("key_themes")),
        ))
    return items
