"""Aggregation of unit results into the job's final artifact.

Generative jobs are concatenated in unit order under their headings.
Extraction jobs are merged with substring-aware deduplication, and
signal jobs additionally get a density score. Outline sections are
kept as written, in unit order.
"""

import re
from typing import Iterable, List, Sequence

from ..schemas.job import SignalSummary
from ..schemas.plan import JobPlan
from ..schemas.results import ExtractedItem, UnitResult

_WS_RE = re.compile(r"\s+")

# (ratio upper bound, score at lower bound, score at upper bound)
_SCORE_BANDS = (
    (0.01, 0.0, 5.0),
    (0.05, 5.0, 25.0),
    (0.10, 25.0, 50.0),
    (0.20, 50.0, 75.0),
    (0.40, 75.0, 95.0),
    (1.00, 95.0, 100.0),
)

_LABELS = (
    (80, "Excellent"),
    (65, "Very Good"),
    (50, "Good"),
    (35, "Moderate"),
)


def normalize(text: str) -> str:
    """Case-folded, whitespace-collapsed text used for equality and containment."""
    return _WS_RE.sub(" ", (text or "").casefold()).strip()


def merge(items: Iterable[ExtractedItem]) -> List[ExtractedItem]:
    """Deduplicate items, keeping the longer of any pair where one contains the other.

    Pure: returns a new list. A new item may evict several shorter kept
    items; it then takes the place of the first one it evicted.
    """
    kept: List[ExtractedItem] = []
    keys: List[str] = []
    for item in items:
        key = normalize(item.text)
        if not key:
            continue
        if any(key == k or key in k for k in keys):
            continue
        evicted = [i for i, k in enumerate(keys) if k in key]
        if evicted:
            slot = evicted[0]
            kept = [it for i, it in enumerate(kept) if i not in evicted[1:]]
            keys = [k for i, k in enumerate(keys) if i not in evicted[1:]]
            kept[slot] = item
            keys[slot] = key
        else:
            kept.append(item)
            keys.append(key)
    return kept


def merge_results(results: Sequence[UnitResult]) -> List[ExtractedItem]:
    """Merge the items of every non-failed result, in unit order."""
    ordered = sorted((r for r in results if r.ok), key=lambda r: r.unit_id)
    return merge(item for r in ordered for item in r.items)


def ordered_items(results: Sequence[UnitResult]) -> List[ExtractedItem]:
    """Items of every non-failed result in unit order, without deduplication."""
    ordered = sorted((r for r in results if r.ok), key=lambda r: r.unit_id)
    return [item for r in ordered for item in r.items]


def combine(plan: JobPlan, results: Sequence[UnitResult]) -> str:
    """Markdown document: title, then one section per result in unit order.

    Failed units are rendered as a visible placeholder.
    """
    by_id = {r.unit_id: r for r in results}
    parts = [f"# {plan.title}"]
    for unit in plan.units:
        result = by_id.get(unit.id)
        if result is None:
            continue
        parts.append(f"## {unit.label}")
        if result.ok:
            parts.append((result.text or "").strip())
        else:
            parts.append(f"[Unit {unit.id} failed: {result.error_message or 'unknown error'}]")
    return "\n\n".join(p for p in parts if p)


def signal_score(ratio: float) -> int:
    """Piecewise-linear score in 0..100; monotone in *ratio*."""
    if ratio <= 0:
        return 0
    lower = 0.0
    for upper, lo_score, hi_score in _SCORE_BANDS:
        if ratio <= upper:
            score = lo_score + (ratio - lower) / (upper - lower) * (hi_score - lo_score)
            return int(round(min(100.0, max(0.0, score))))
        lower = upper
    return 100


def signal_label(score: int) -> str:
    for threshold, label in _LABELS:
        if score >= threshold:
            return label
    return "Low"


def summarize_signal(items: Sequence[ExtractedItem], total_input_length: int) -> SignalSummary:
    signal_length = sum(item.derived_length for item in items)
    ratio = signal_length / total_input_length if total_input_length > 0 else 0.0
    score = signal_score(ratio)
    return SignalSummary(
        ratio=ratio,
        score=score,
        total_input_length=total_input_length,
        total_signal_length=signal_length,
        label=signal_label(score),
    )


def render_items(items: Sequence[ExtractedItem]) -> str:
    """Numbered display lines ``N. author | text | source``."""
    lines = []
    for n, item in enumerate(items, start=1):
        fields = [item.author or "Unknown", item.text]
        if item.source_label:
            fields.append(item.source_label)
        lines.append(f"{n}. " + " | ".join(fields))
    return "\n".join(lines)


def render_outline(title: str, sections: Sequence[ExtractedItem]) -> str:
    lines = [f"# {title}"]
    for n, section in enumerate(sections, start=1):
        lines.append("")
        lines.append(f"{n}. {section.text}")
        if section.note:
            lines.append(f"   {section.note}")
        if section.themes:
            lines.append(f"   Themes: {', '.join(section.themes)}")
    return "\n".join(lines)
