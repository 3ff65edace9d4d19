"""Planner: decomposes a job into ordered unit descriptors.

Unit count and sizes come from a fixed rule so the plan always covers
the target. The generation call only contributes structure (labels,
goals, key points); when its output is unusable the planner falls back
to evenly sized generic units and flags the plan as degraded.
"""

import logging
from typing import List, Optional, Sequence

from ..core.config import Settings, settings as default_settings
from ..exceptions import PlanningError
from ..schemas.plan import JobKind, JobPlan, UnitDescriptor
from .generation import GenerateFn
from .parsing import extract_list, has_list, parse_structured

logger = logging.getLogger(__name__)

PLAN_HEADER = "You are an expert document architect."

DEFAULT_CONSTRAINTS = [
    "Do not repeat arguments across units",
    "Maintain internal consistency",
    "Cross-reference earlier units where relevant",
]

PURE_CONSTRAINT = (
    "Use only the supplied source material. Do not draw on outside knowledge; "
    "where the material is silent, say so."
)

_FALLBACK_TITLES = {
    JobKind.WRITE: "Long Answer",
    JobKind.REWRITE: "Rewritten Document",
    JobKind.CUSTOM: "Custom Analysis",
    JobKind.QUOTES: "Extracted Quotes",
    JobKind.POSITIONS: "Extracted Positions",
    JobKind.ARGUMENTS: "Extracted Arguments",
    JobKind.SIGNAL: "Signal Analysis",
    JobKind.OUTLINE: "Document Outline",
}


def count_words(text: str) -> int:
    return len((text or "").split())


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def compute_unit_count(target: int, min_units: int, max_unit_size: int) -> int:
    """``max(min_units, ceil(target / max_unit_size))``."""
    return max(min_units, _ceil_div(target, max_unit_size))


def slice_source(text: str, weights: Sequence[int]) -> List[str]:
    """Split *text* into ``len(weights)`` word slices proportional to *weights*.

    Boundaries round up, so no slice falls short of its share; the last
    slice takes whatever remains.
    """
    words = (text or "").split()
    if not weights:
        return [" ".join(words)]
    total = len(words)
    wsum = sum(weights)
    if wsum <= 0:
        weights = [1] * len(weights)
        wsum = len(weights)

    slices = []
    start = 0
    cumulative = 0
    for i, weight in enumerate(weights):
        cumulative += weight
        if i == len(weights) - 1:
            end = total
        else:
            end = min(total, _ceil_div(total * cumulative, wsum))
        slices.append(" ".join(words[start:end]))
        start = end
    return slices


def distribute(total: int, weights: Sequence[int]) -> List[int]:
    """Split *total* into integer shares proportional to *weights*.

    Shares always sum to *total*; leftover words go to the largest
    remainders, earliest unit first on ties.
    """
    if not weights:
        return []
    wsum = sum(weights)
    if wsum <= 0:
        weights = [1] * len(weights)
        wsum = len(weights)
    shares = [total * w // wsum for w in weights]
    order = sorted(range(len(weights)), key=lambda i: (-(total * weights[i] % wsum), i))
    for i in order[:total - sum(shares)]:
        shares[i] += 1
    return shares


class Planner:
    """Builds a JobPlan for any job kind."""

    def __init__(self, generate: GenerateFn, settings: Optional[Settings] = None):
        self.generate = generate
        self.settings = settings or default_settings

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def _sizing(self, kind: JobKind, source_text: str, target_words: Optional[int]):
        """Return (target, unit_count) for the job, or raise PlanningError."""
        s = self.settings
        if kind is JobKind.WRITE:
            if target_words is not None and target_words <= 0:
                raise PlanningError("Target length must be positive")
            target = target_words or s.min_target_words
            target = min(max(target, s.min_target_words), s.max_target_words)
            return target, compute_unit_count(target, s.generate_min_units, s.generate_max_unit_words)

        source_words = count_words(source_text)
        if source_words <= 0:
            raise PlanningError("Source text is empty")
        unit_count = compute_unit_count(source_words, s.analysis_min_units, s.analysis_max_unit_words)
        if not kind.follows_source_length or target_words is None:
            return source_words, unit_count

        # Requested output length: no unit may be asked for more than a generation call holds.
        if target_words <= 0:
            raise PlanningError("Target length must be positive")
        target = min(target_words, s.max_target_words)
        unit_count = max(unit_count, _ceil_div(target, s.generate_max_unit_words))
        return target, min(unit_count, source_words)

    # ------------------------------------------------------------------
    # Planning instruction
    # ------------------------------------------------------------------

    def _instruction(
        self,
        kind: JobKind,
        task: str,
        source_text: str,
        source_packet: Optional[str],
        target: int,
        unit_count: int,
        per_unit: int,
    ) -> str:
        preview_chars = self.settings.plan_preview_chars
        parts = [PLAN_HEADER]
        if kind is JobKind.WRITE:
            parts.append(f"Create a structural skeleton for this writing task.\n\nPROMPT:\n{task}")
            if source_packet:
                parts.append(
                    "PRIMARY SOURCE MATERIAL (base the outline on this material):\n"
                    f"{source_packet[:preview_chars]}"
                )
        else:
            parts.append(
                f"Outline the following text so it can be processed in {unit_count} "
                "consecutive parts of roughly equal length."
            )
            if task:
                parts.append(f"TASK:\n{task}")
            parts.append(f"TEXT (beginning):\n{source_text[:preview_chars]}")

        parts.append(
            f"TARGET LENGTH: approximately {target} words total\n"
            f"NUMBER OF UNITS: exactly {unit_count} (about {per_unit} words each)"
        )
        parts.append(
            "Return ONLY valid JSON (no markdown, no explanation):\n"
            "{\n"
            '  "title": "Document title",\n'
            '  "thesis": "Central thesis or summary of the task",\n'
            '  "constraints": ["constraint 1", "constraint 2"],\n'
            '  "units": [\n'
            '    {"id": 1, "heading": "Unit heading", "goal": "What this unit accomplishes",\n'
            '     "keyPoints": ["point 1", "point 2"]}\n'
            "  ]\n"
            "}"
        )
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def plan(
        self,
        kind: JobKind,
        provider: str,
        task: str = "",
        source_text: str = "",
        target_words: Optional[int] = None,
        source_packet: Optional[str] = None,
        author: str = "",
        pure: bool = False,
    ) -> JobPlan:
        """Plan a job. Raises PlanningError only when no plan is possible."""
        if kind is JobKind.WRITE and not task.strip():
            raise PlanningError("Writing prompt is empty")
        if kind is JobKind.CUSTOM and not task.strip():
            raise PlanningError("Instructions are empty")
        if kind.needs_source and not source_text.strip():
            raise PlanningError("Source text is empty")

        target, unit_count = self._sizing(kind, source_text, target_words)
        requested = target if kind.follows_source_length and target_words is not None else None
        per_unit = _ceil_div(target, unit_count)

        instruction = self._instruction(
            kind, task, source_text, source_packet, target, unit_count, per_unit,
        )
        structure = None
        try:
            raw = self.generate(provider, instruction)
            parsed = parse_structured(raw, accept=has_list)
            if not parsed.degraded:
                structure = parsed.value
        except Exception as e:
            logger.warning("Planning call failed for %s job, using generic plan: %s", kind.value, e)

        degraded = structure is None
        if degraded:
            logger.warning(
                "Planning output unusable, using generic %d-unit plan", unit_count,
                extra={"kind": kind.value},
            )

        header = structure if isinstance(structure, dict) else {}
        sections = extract_list(structure) if structure is not None else None
        sections = [s for s in (sections or []) if isinstance(s, dict)]

        if kind.needs_source:
            slices = slice_source(source_text, [per_unit] * unit_count)
            sizes = [count_words(sl) for sl in slices]
            if requested is not None:
                sizes = distribute(requested, sizes)
        else:
            slices = [None] * unit_count
            sizes = [per_unit] * unit_count

        units = []
        for i in range(unit_count):
            section = sections[i] if i < len(sections) else {}
            key_points = section.get("keyPoints") or section.get("key_points") or []
            units.append(UnitDescriptor(
                id=i + 1,
                label=str(section.get("heading") or section.get("label") or section.get("title") or f"Section {i + 1}"),
                goal=str(section.get("goal") or ""),
                target_size=sizes[i],
                key_points=[str(p) for p in key_points if p] if isinstance(key_points, list) else [],
                source_slice=slices[i],
            ))

        constraints = header.get("constraints")
        if not isinstance(constraints, list) or not constraints:
            constraints = list(DEFAULT_CONSTRAINTS)
        constraints = [str(c) for c in constraints]
        if pure:
            constraints.append(PURE_CONSTRAINT)

        plan = JobPlan(
            kind=kind,
            title=str(header.get("title") or _FALLBACK_TITLES[kind]),
            summary=str(header.get("thesis") or header.get("summary") or task),
            task=task,
            units=units,
            constraints=constraints,
            source_packet=source_packet,
            author=author,
            input_length=len(source_text),
            target_words=requested,
            degraded=degraded,
        )
        logger.info(
            "Planned %s job: %d units, %d words",
            kind.value, plan.unit_count, plan.total_target_size,
            extra={"degraded": degraded},
        )
        return plan
