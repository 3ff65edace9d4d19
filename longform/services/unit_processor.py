"""Unit processor: one instruction, one generation call, one classified result."""

import logging
from typing import Optional

from ..core.config import Settings, settings as default_settings
from ..exceptions import JobCancelledError
from ..schemas.plan import JobKind, JobPlan, UnitDescriptor
from ..schemas.results import ExtractedItem, UnitResult, UnitStatus
from .generation import GenerateFn
from .parsing import (
    clean_prose,
    coerce_items,
    coerce_outline,
    extract_list,
    has_list,
    has_outline,
    parse_structured,
    raw_lines,
)

logger = logging.getLogger(__name__)

SOURCE_PACKET_CHARS = 8000

_JSON_ONLY = "IMPORTANT: Respond with valid JSON only. No markdown, no extra text."

# Outside this band around the source length a unit is told to expand or condense.
EXPAND_RATIO = 1.3
CONDENSE_RATIO = 0.7

_REWRITE_KEYWORDS = (
    "rewrite", "rephrase", "summarize", "translate", "convert",
    "simplify", "expand", "compress", "paraphrase", "edit",
)
_ANALYSIS_KEYWORDS = (
    "extract", "find", "identify", "list", "analyze",
    "what are", "how many", "compare", "evaluate",
)

_EXTRACTION_INSTRUCTIONS = {
    JobKind.QUOTES: (
        "Extract meaningful direct quotes from the source text of this unit.\n"
        "- Each quote must appear EXACTLY as written in the source\n"
        "- Prefer statements, claims, definitions and arguments over scaffolding\n"
        "- Do not repeat quotes already listed in the prior content summary\n\n"
        'Output JSON: {{"quotes": [{{"author": "{author}", "quote": "exact verbatim text", '
        '"topic": "short topic"}}]}}'
    ),
    JobKind.POSITIONS: (
        "Extract every meaningful position, claim or insight stated in the source text "
        "of this unit, verbatim.\n"
        "- No paraphrases\n"
        "- Do not repeat positions already listed in the prior content summary\n\n"
        'Output JSON: {{"positions": [{{"author": "{author}", "quote": "exact verbatim text", '
        '"source": "{label}", "importance": 1}}]}}'
    ),
    JobKind.ARGUMENTS: (
        "Extract every meaningful argument in the source text of this unit with its "
        "complete premise chain and conclusion. Use verbatim wording where possible.\n\n"
        'Output JSON: {{"arguments": [{{"author": "{author}", "premises": ["premise 1", '
        '"premise 2"], "conclusion": "the claim the premises support", "source": "{label}"}}]}}'
    ),
    JobKind.SIGNAL: (
        "Extract ONLY passages that carry genuine insight: original claims, definitions, "
        "arguments. Skip roadmapping, meta-commentary and restatement. If the text has no "
        'genuine insight, return {{"quotes": []}}.\n\n'
        'Output JSON: {{"quotes": [{{"quote": "exact verbatim genuine insight"}}]}}'
    ),
    JobKind.OUTLINE: (
        "Describe the source text of this unit as one section of a structural outline of "
        "the whole document. Use the prior content summary to keep titles distinct.\n\n"
        'Output JSON: {{"title": "descriptive section title", "description": "2-4 sentences on '
        'what this section argues and how it connects to the rest", '
        '"keyThemes": ["theme 1", "theme 2", "theme 3"]}}'
    ),
}


def custom_task_type(instructions: str) -> str:
    """Classify custom instructions as "rewrite" or "analysis"; ties go to rewrite."""
    lowered = (instructions or "").lower()
    rewrite_score = sum(1 for k in _REWRITE_KEYWORDS if k in lowered)
    analysis_score = sum(1 for k in _ANALYSIS_KEYWORDS if k in lowered)
    return "rewrite" if rewrite_score >= analysis_score else "analysis"


def length_guidance(target: int, source_words: int) -> str:
    """How a transformed unit's length should relate to its source slice."""
    if source_words <= 0:
        return f"Write approximately {target} words."
    ratio = target / source_words
    if ratio > EXPAND_RATIO:
        return (
            f"You are EXPANDING this section from {source_words} to approximately {target} words "
            f"({ratio:.1f}x). Do not summarize or condense. For every idea add explanation, "
            "examples, implications and supporting reasoning."
        )
    if ratio < CONDENSE_RATIO:
        return (
            f"Condense this section from {source_words} to approximately {target} words. "
            "Keep every key claim and its reasoning; drop repetition and minor detail."
        )
    return f"Keep roughly the source length (approximately {target} words) while improving clarity and flow."


class UnitProcessor:
    """Runs a single unit against the generation function."""

    def __init__(self, generate: GenerateFn, settings: Optional[Settings] = None):
        self.generate = generate
        self.settings = settings or default_settings

    def build_instruction(
        self,
        unit: UnitDescriptor,
        plan: JobPlan,
        memory: str,
        source_slice: Optional[str] = None,
    ) -> str:
        """Task, whole-plan overview, memory, this unit's goal and (if any) its source slice."""
        total = plan.unit_count
        parts = [f"You are working on unit {unit.id} of {total} of a single long document job."]

        if plan.task:
            parts.append(f"ORIGINAL TASK:\n{plan.task}")
        parts.append(f"DOCUMENT TITLE: {plan.title}")
        if plan.summary and plan.summary != plan.task:
            parts.append(f"CENTRAL THESIS / SUMMARY: {plan.summary}")
        parts.append(f"FULL PLAN:\n{plan.overview()}")
        if plan.constraints:
            parts.append("CONSTRAINTS:\n" + "\n".join(f"- {c}" for c in plan.constraints))
        if plan.source_packet:
            parts.append(f"PRIMARY SOURCE MATERIAL:\n{plan.source_packet[:SOURCE_PACKET_CHARS]}")
        if memory:
            parts.append(f"PRIOR CONTENT SUMMARY:\n{memory}")

        current = [f"CURRENT UNIT: {unit.id}. {unit.label}"]
        if unit.goal:
            current.append(f"Goal: {unit.goal}")
        if unit.key_points:
            current.append("Key points: " + ", ".join(unit.key_points))
        current.append(f"Target length: {unit.target_size} words")
        parts.append("\n".join(current))

        if source_slice:
            parts.append(f"SOURCE TEXT FOR THIS UNIT:\n{source_slice}")

        parts.append(self._kind_instructions(unit, plan, source_slice))
        return "\n\n".join(parts)

    def _kind_instructions(self, unit: UnitDescriptor, plan: JobPlan, source_slice: Optional[str]) -> str:
        if plan.kind is JobKind.WRITE:
            if unit.id == 1:
                position = "Open with an introduction that frames the entire document."
            elif unit.id == plan.unit_count:
                position = "Conclude by synthesizing the whole document into a final assessment."
            else:
                position = "Build on earlier units and transition smoothly to what follows."
            return (
                "INSTRUCTIONS:\n"
                f"1. Write this unit as polished prose, at least {unit.target_size} words\n"
                "2. Do not repeat what earlier units already stated\n"
                "3. Advance the thesis with material specific to this unit's goal\n"
                f"4. {position}\n"
                "5. Write ONLY the unit's content: no JSON, no metadata, no heading"
            )
        if plan.kind is JobKind.REWRITE or (
            plan.kind is JobKind.CUSTOM and custom_task_type(plan.task) == "rewrite"
        ):
            source_words = len((source_slice or "").split())
            return (
                "INSTRUCTIONS:\n"
                "Rewrite the source text for this unit according to the original task. "
                "Keep its substance and order, stay consistent with the prior content summary, "
                "and output ONLY the rewritten text.\n"
                f"LENGTH: {length_guidance(unit.target_size, source_words)}"
            )
        if plan.kind is JobKind.CUSTOM:
            return (
                "INSTRUCTIONS:\n"
                "Apply the original task to the source text of this unit. Be thorough and specific, "
                "build on the prior content summary instead of repeating it, and write prose only "
                "(no JSON, no heading)."
            )
        template = _EXTRACTION_INSTRUCTIONS[plan.kind]
        body = template.format(author=plan.author or "Unknown", label=unit.label)
        return f"INSTRUCTIONS:\n{body}\n\n{_JSON_ONLY}"

    def process(
        self,
        unit: UnitDescriptor,
        plan: JobPlan,
        memory: str,
        provider: str,
        source_slice: Optional[str] = None,
    ) -> UnitResult:
        """Exactly one generation call. Provider faults become a FAILED result."""
        source_slice = source_slice if source_slice is not None else unit.source_slice
        instruction = self.build_instruction(unit, plan, memory, source_slice)

        try:
            raw = self.generate(provider, instruction)
        except JobCancelledError:
            raise
        except Exception as e:
            logger.error("Unit %d failed: %s", unit.id, e, extra={"provider": provider})
            return UnitResult(unit_id=unit.id, status=UnitStatus.FAILED, error_message=str(e))

        raw = raw or ""
        if plan.kind.is_generative:
            text = clean_prose(raw)
            if not text:
                logger.warning("Unit %d returned empty output", unit.id)
                return UnitResult(unit_id=unit.id, status=UnitStatus.DEGRADED, text="")
            return UnitResult(unit_id=unit.id, status=UnitStatus.SUCCESS, text=text)

        if plan.kind is JobKind.OUTLINE:
            return self._outline_result(unit, raw)

        parsed = parse_structured(raw, accept=has_list)
        if not parsed.degraded:
            items = coerce_items(extract_list(parsed.value), plan.author, unit.label)
            return UnitResult(unit_id=unit.id, status=UnitStatus.SUCCESS, items=items)

        logger.warning("Unit %d output was not parseable, keeping raw lines", unit.id)
        items = coerce_items(raw_lines(raw), plan.author, unit.label)
        return UnitResult(unit_id=unit.id, status=UnitStatus.DEGRADED, text=raw.strip(), items=items)

    def _outline_result(self, unit: UnitDescriptor, raw: str) -> UnitResult:
        parsed = parse_structured(raw, accept=has_outline)
        if not parsed.degraded:
            items = coerce_outline(parsed.value, unit.label)
            if items:
                return UnitResult(unit_id=unit.id, status=UnitStatus.SUCCESS, items=items)

        logger.warning("Unit %d outline was not parseable, keeping raw text", unit.id)
        description = " ".join(raw.split())[:300]
        items = [ExtractedItem(text=unit.label, source_label=unit.label, note=description)] if description else []
        return UnitResult(unit_id=unit.id, status=UnitStatus.DEGRADED, text=raw.strip(), items=items)
