"""Rolling memory passed to each unit.

Entries are short briefs of completed units. ``get`` renders the newest
entries that fit a character budget; ``compress`` replaces every entry
with one model-written summary and falls back to plain truncation when
that call fails.
"""

import logging
from typing import Iterable, List, Optional

from ..schemas.plan import UnitDescriptor
from ..schemas.results import UnitResult
from .generation import GenerateFn
from .parsing import clean_prose

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[earlier content truncated]"
COMPRESSED_PREFIX = "[COMPRESSED MEMORY]"
SEPARATOR = "\n\n"
MAX_COMPRESSION_INPUT = 12000
BRIEF_CHARS = 500
BRIEF_ITEMS = 5


def unit_brief(unit: UnitDescriptor, result: UnitResult) -> Optional[str]:
    """What a finished unit contributes to memory. Failed units contribute nothing."""
    if not result.ok:
        return None
    heading = f"[{unit.id}. {unit.label}]"
    if result.items:
        texts = [item.text[:200] for item in result.items[:BRIEF_ITEMS]]
        return f"{heading} " + "; ".join(texts)
    text = (result.text or "").strip()
    if not text:
        return f"{heading} (no content)"
    return f"{heading} {text[:BRIEF_CHARS]}..."


class ContextWindowManager:
    """Bounded memory of prior units. Not thread-safe; one per job."""

    def __init__(self, budget: int, entries: Optional[Iterable[str]] = None):
        if budget <= 0:
            raise ValueError("Memory budget must be positive")
        self.budget = budget
        self._entries: List[str] = list(entries or [])

    @classmethod
    def from_entries(cls, budget: int, entries: Iterable[str]) -> "ContextWindowManager":
        return cls(budget, entries)

    @property
    def entries(self) -> List[str]:
        """Snapshot for persistence."""
        return list(self._entries)

    @property
    def raw_size(self) -> int:
        return len(SEPARATOR.join(self._entries))

    def append(self, entry: str) -> None:
        if entry:
            self._entries.append(entry)

    def needs_compression(self, completed_units: int, every: int) -> bool:
        """True every *every* completed units, or when raw entries overflow the budget."""
        if len(self._entries) < 2:
            return self.raw_size > self.budget
        if self.raw_size > self.budget:
            return True
        return every > 0 and completed_units > 0 and completed_units % every == 0

    def get(self, budget: Optional[int] = None) -> str:
        """Newest entries that fit in *budget* characters, oldest first.

        When an older entry no longer fits, the result starts with the
        truncation marker followed by the tail of that entry. The result
        never exceeds *budget*.
        """
        budget = self.budget if budget is None else budget
        if budget <= 0 or not self._entries:
            return ""

        kept: List[str] = []
        used = 0
        for entry in reversed(self._entries):
            cost = len(entry) + (len(SEPARATOR) if kept else 0)
            if used + cost <= budget:
                kept.insert(0, entry)
                used += cost
                continue

            if not kept:
                # Newest entry alone is over budget: keep its end.
                room = budget - len(TRUNCATION_MARKER) - 1
                if room > 0:
                    return f"{TRUNCATION_MARKER}\n{entry[-room:]}"
                return entry[-budget:]

            room = budget - used - len(SEPARATOR) - len(TRUNCATION_MARKER) - 1
            if room > 0:
                kept.insert(0, f"{TRUNCATION_MARKER}\n{entry[-room:]}")
            elif budget - used - len(SEPARATOR) >= len(TRUNCATION_MARKER):
                kept.insert(0, TRUNCATION_MARKER)
            break

        return SEPARATOR.join(kept)

    def _fallback(self) -> None:
        truncated = self.get(self.budget)
        self._entries = [truncated] if truncated else []

    def compress(self, generate: GenerateFn, provider: str) -> bool:
        """Replace all entries with one compressed summary.

        Returns False when compression failed and entries were truncated instead.
        """
        if not self._entries:
            return True

        material = SEPARATOR.join(self._entries)[-MAX_COMPRESSION_INPUT:]
        instruction = (
            "Compress the following notes on previously completed parts of a long document "
            f"into a dense summary of at most {self.budget} characters. Preserve key claims, "
            "names, terms and conclusions so later parts stay consistent and avoid repetition. "
            "Output only the summary.\n\n"
            f"NOTES:\n{material}"
        )
        try:
            summary = clean_prose(generate(provider, instruction))
        except Exception as e:
            logger.warning("Memory compression failed, truncating instead: %s", e)
            self._fallback()
            return False

        if not summary:
            logger.warning("Memory compression returned nothing, truncating instead")
            self._fallback()
            return False

        room = self.budget - len(COMPRESSED_PREFIX) - 1
        if room <= 0:
            self._fallback()
            return False
        if len(summary) > room:
            logger.warning(
                "Compressed summary over budget (%d > %d chars), clipping", len(summary), room,
            )
            summary = summary[:room].rstrip()

        before = self.raw_size
        self._entries = [f"{COMPRESSED_PREFIX}\n{summary}"]
        logger.info("Compressed memory from %d to %d chars", before, self.raw_size)
        return True
