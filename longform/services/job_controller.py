"""Job controller: the per-unit state machine and the run loop.

Units move pending -> selected -> in_progress -> done | failed. A run
processes selected units strictly in ordinal order, one at a time,
persisting job state after every unit before starting the next. A
failed unit stops the run; everything already done stays valid and a
later run picks up where this one stopped.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

from ..core.config import Settings, settings as default_settings
from ..core.logging_config import document_id_var
from ..exceptions import (
    JobAlreadyRunningError,
    JobCancelledError,
    PersistenceError,
    ValidationError,
)
from ..schemas.job import (
    JobOutputResponse,
    JobState,
    RunMode,
    RunOutcome,
    RunStatus,
    UnitPhase,
)
from ..schemas.plan import JobKind, JobPlan, UnitDescriptor
from ..schemas.progress import ProgressPhase
from ..schemas.results import UnitResult, UnitStatus
from .aggregator import (
    combine,
    merge_results,
    ordered_items,
    render_items,
    render_outline,
    summarize_signal,
)
from .context_window import ContextWindowManager, unit_brief
from .generation import GenerateFn
from .planner import Planner, count_words
from .progress import ProgressChannel
from .unit_processor import UnitProcessor

logger = logging.getLogger(__name__)

PRESETS = (
    "all",
    "first_half",
    "second_half",
    "first_third",
    "middle_third",
    "last_third",
    "remaining",
)


class JobStore(Protocol):
    """Anything that can durably save a job (JobRepository in production)."""

    def save(self, plan: JobPlan, state: JobState, status: str,
             error_message: Optional[str] = None) -> Any: ...


@dataclass
class JobHandle:
    """Everything the run loop needs for one job."""
    plan: JobPlan
    state: JobState
    memory: ContextWindowManager
    progress: ProgressChannel
    status: str = "planned"
    cancel_event: threading.Event = field(default_factory=threading.Event)
    run_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def document_id(self) -> str:
        return self.state.document_id

    @property
    def running(self) -> bool:
        return self.run_lock.locked()


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def adjusted_target(plan: JobPlan, state: JobState, unit: UnitDescriptor) -> int:
    """Words still owed to a requested total, spread over the units not yet done.

    Keeps a rewrite on target when earlier units came out long or short.
    Never drops below a quarter of the unit's planned size.
    """
    if plan.target_words is None:
        return unit.target_size
    written = sum(count_words(r.text or "") for r in state.accumulated_results if r.ok)
    remaining_units = len(state.units) - state.completed_count
    remaining = plan.target_words - written
    if remaining_units <= 0 or remaining <= 0:
        return max(unit.target_size // 4, 1)
    return max(_ceil_div(remaining, remaining_units), unit.target_size // 4, 1)


def preset_ordinals(preset: str, unit_count: int, state: Optional[JobState] = None) -> List[int]:
    """Translate a named preset into unit ordinals; depends only on unit_count
    (and, for ``remaining``, on which units are done)."""
    n = unit_count
    half = _ceil_div(n, 2)
    third = _ceil_div(n, 3)
    two_thirds = _ceil_div(2 * n, 3)
    ranges = {
        "all": (1, n),
        "first_half": (1, half),
        "second_half": (half + 1, n),
        "first_third": (1, third),
        "middle_third": (third + 1, two_thirds),
        "last_third": (two_thirds + 1, n),
    }
    if preset == "remaining":
        if state is None:
            return list(range(1, n + 1))
        return [uid for uid in range(1, n + 1) if state.units[uid].phase is not UnitPhase.DONE]
    if preset not in ranges:
        raise ValidationError(
            f"Unknown preset '{preset}'. Valid presets: {', '.join(PRESETS)}", field="preset",
        )
    start, end = ranges[preset]
    return list(range(start, end + 1))


class JobController:
    """Plans jobs and drives their run loops. Holds no per-job state itself."""

    def __init__(
        self,
        generate: GenerateFn,
        store: Optional[JobStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.generate = generate
        self.store = store
        self.settings = settings or default_settings
        self.planner = Planner(generate, self.settings)
        self.processor = UnitProcessor(generate, self.settings)

    # ------------------------------------------------------------------
    # Job creation and restore
    # ------------------------------------------------------------------

    def create(
        self,
        kind: JobKind,
        provider: Optional[str] = None,
        task: str = "",
        source_text: str = "",
        target_words: Optional[int] = None,
        source_packet: Optional[str] = None,
        author: str = "",
        pure: bool = False,
        document_id: Optional[str] = None,
    ) -> JobHandle:
        """Plan a new job and persist it. Every unit starts pending."""
        document_id = document_id or str(uuid.uuid4())
        provider = provider or self.settings.default_provider
        token = document_id_var.set(document_id)
        try:
            plan = self.planner.plan(
                kind, provider,
                task=task,
                source_text=source_text,
                target_words=target_words,
                source_packet=source_packet,
                author=author,
                pure=pure,
            )
            state = JobState.fresh(document_id, kind, provider, [u.id for u in plan.units])
            handle = JobHandle(
                plan=plan,
                state=state,
                memory=ContextWindowManager(self.settings.memory_budget_chars),
                progress=ProgressChannel(document_id, self.settings.progress_max_events),
            )
            self._persist(handle, "planned")
            message = f'Plan ready: "{plan.title}", {plan.unit_count} units'
            if plan.degraded:
                message += " (generic structure)"
            handle.progress.emit(ProgressPhase.PLANNING, message, current=0, total=plan.unit_count)
            logger.info("Created %s job %s", kind.value, document_id)
            return handle
        finally:
            document_id_var.reset(token)

    def restore(self, plan: JobPlan, state: JobState, status: str = "planned") -> JobHandle:
        """Rebuild a handle from persisted plan and state.

        A unit left in progress by a crashed process goes back to selected.
        """
        for uid in state.ids_in(UnitPhase.IN_PROGRESS):
            state.units[uid].phase = UnitPhase.SELECTED
        return JobHandle(
            plan=plan,
            state=state,
            memory=ContextWindowManager.from_entries(
                self.settings.memory_budget_chars, state.memory_entries,
            ),
            progress=ProgressChannel(state.document_id, self.settings.progress_max_events),
            status=status,
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(
        self,
        handle: JobHandle,
        units: Optional[List[int]] = None,
        preset: Optional[str] = None,
    ) -> List[int]:
        """Mark units selected for the next run; returns the selected ordinals.

        With neither *units* nor *preset*, every unit not yet done is
        selected. Done units are never re-selected. Previously selected
        units outside the new selection go back to pending.
        """
        if handle.running:
            raise JobAlreadyRunningError(handle.document_id)
        state = handle.state
        n = handle.plan.unit_count

        if units is not None and preset is not None:
            raise ValidationError("Give either units or a preset, not both")
        if units is not None:
            invalid = sorted({u for u in units if u < 1 or u > n})
            if invalid:
                raise ValidationError(
                    f"Unit ordinals out of range 1..{n}: {invalid}", field="units",
                )
            wanted = set(units)
        elif preset is not None:
            wanted = set(preset_ordinals(preset, n, state))
        else:
            wanted = set(preset_ordinals("remaining", n, state))

        chosen = []
        for uid, unit_state in state.units.items():
            if unit_state.phase is UnitPhase.DONE:
                continue
            if uid in wanted:
                unit_state.phase = UnitPhase.SELECTED
                chosen.append(uid)
            elif unit_state.phase is UnitPhase.SELECTED:
                unit_state.phase = UnitPhase.PENDING
        return sorted(chosen)

    def cancel(self, handle: JobHandle) -> None:
        """Request cancellation. The run stops before starting its next unit.

        The request stays set until the job is claimed for another run, so a
        cancel that lands before the run loop starts is still honoured.
        """
        handle.cancel_event.set()
        logger.info("Cancellation requested for %s", handle.document_id)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self, handle: JobHandle, mode: RunMode = RunMode.INTERACTIVE) -> RunOutcome:
        """Process every selected unit in order until done, failed or cancelled."""
        if not handle.run_lock.acquire(blocking=False):
            raise JobAlreadyRunningError(handle.document_id)
        token = document_id_var.set(handle.document_id)
        try:
            return self._run_loop(handle, mode)
        except Exception:
            # The run is over even if storage still says running.
            handle.status = "failed"
            raise
        finally:
            document_id_var.reset(token)
            handle.run_lock.release()

    def _run_loop(self, handle: JobHandle, mode: RunMode) -> RunOutcome:
        plan, state = handle.plan, handle.state
        total = plan.unit_count
        delay = (
            self.settings.batch_unit_delay_seconds
            if mode is RunMode.BATCH
            else self.settings.interactive_unit_delay_seconds
        )

        # Also retries storage after an earlier persistence failure.
        self._persist_or_report(handle, "running")
        logger.info("Run started: %d units selected", len(state.ids_in(UnitPhase.SELECTED)))

        while True:
            selected = state.ids_in(UnitPhase.SELECTED)
            if not selected:
                break
            if handle.cancel_event.is_set():
                return self._cancelled(handle)

            uid = selected[0]
            unit = plan.unit(uid)
            unit_state = state.units[uid]
            unit_state.phase = UnitPhase.IN_PROGRESS
            unit_state.attempts += 1
            handle.progress.emit(
                ProgressPhase.PROCESSING,
                f"Processing unit {uid}/{total}: {unit.label}",
                current=uid, total=total,
            )

            memory = handle.memory.get(self.settings.memory_budget_chars)
            target = adjusted_target(plan, state, unit)
            if target != unit.target_size:
                logger.debug("Unit %d target adjusted to %d words", uid, target)
                unit = unit.model_copy(update={"target_size": target})
            try:
                result = self.processor.process(unit, plan, memory, state.provider)
            except JobCancelledError:
                unit_state.phase = UnitPhase.SELECTED
                handle.cancel_event.set()
                return self._cancelled(handle)
            except BaseException:
                unit_state.phase = UnitPhase.SELECTED
                raise

            if not result.ok:
                if handle.cancel_event.is_set():
                    unit_state.phase = UnitPhase.SELECTED
                    return self._cancelled(handle)
                return self._failed(handle, uid, result.error_message or "unknown error")

            self._record(handle, uid, result)
            handle.progress.emit(
                ProgressPhase.PROCESSING,
                f"Completed unit {uid}/{total}: {unit.label}",
                current=uid, total=total,
                partial_content=self.render(handle),
            )

            if state.ids_in(UnitPhase.SELECTED) and delay > 0:
                handle.cancel_event.wait(delay)

        return self._completed(handle)

    def _record(self, handle: JobHandle, uid: int, result: UnitResult) -> None:
        """Mark a unit done, feed memory and persist before the next unit."""
        state = handle.state
        unit = handle.plan.unit(uid)

        state.units[uid].phase = UnitPhase.DONE
        state.units[uid].last_error = None
        results = [r for r in state.accumulated_results if r.unit_id != uid]
        results.append(result)
        state.accumulated_results = sorted(results, key=lambda r: r.unit_id)
        if result.status is UnitStatus.DEGRADED:
            logger.warning("Unit %d kept as degraded output", uid)

        brief = unit_brief(unit, result)
        if brief:
            handle.memory.append(brief)
        if handle.memory.needs_compression(state.completed_count, self.settings.compress_every_units):
            handle.progress.emit(
                ProgressPhase.WINDOWING,
                f"Compressing memory ({len(handle.memory.entries)} entries)",
                current=uid, total=handle.plan.unit_count,
            )
            if not handle.memory.compress(self.generate, state.provider):
                handle.progress.emit(
                    ProgressPhase.WINDOWING,
                    "Memory compression failed, earlier content truncated",
                    current=uid, total=handle.plan.unit_count,
                )
        state.memory_entries = handle.memory.entries

        self._persist_or_report(handle, "running")
        logger.info("Unit %d done (%s)", uid, result.status.value)

    def _failed(self, handle: JobHandle, uid: int, error: str) -> RunOutcome:
        state = handle.state
        unit_state = state.units[uid]
        unit_state.phase = UnitPhase.FAILED
        unit_state.last_error = error
        for other in state.ids_in(UnitPhase.SELECTED):
            state.units[other].phase = UnitPhase.PENDING

        message = (
            f"Unit {uid} failed: {error}. "
            f"{state.completed_count} of {handle.plan.unit_count} units completed"
        )
        logger.error("Run stopped at unit %d: %s", uid, error)
        persist_error = None
        try:
            self._persist(handle, "failed", message)
        except PersistenceError as e:
            persist_error = e
        handle.progress.emit(
            ProgressPhase.ERROR, message,
            current=state.completed_count, total=handle.plan.unit_count,
        )
        if persist_error is not None:
            raise persist_error
        return self._outcome(handle, RunStatus.FAILED, failed_unit=uid, error=error)

    def _cancelled(self, handle: JobHandle) -> RunOutcome:
        state = handle.state
        message = f"Cancelled after {state.completed_count} of {handle.plan.unit_count} units"
        self._persist_or_report(handle, "cancelled")
        handle.progress.emit(
            ProgressPhase.ERROR, message,
            current=state.completed_count, total=handle.plan.unit_count,
        )
        logger.info(message)
        return self._outcome(handle, RunStatus.CANCELLED, error=message)

    def _completed(self, handle: JobHandle) -> RunOutcome:
        state = handle.state
        total = handle.plan.unit_count
        handle.progress.emit(
            ProgressPhase.AGGREGATING,
            f"Aggregating {len(state.accumulated_results)} unit results",
            current=state.completed_count, total=total,
        )
        rendered = self.render(handle)
        self._persist_or_report(handle, "complete" if state.is_complete else "partial")
        handle.progress.emit(
            ProgressPhase.COMPLETE,
            f"Completed {state.completed_count} of {total} units",
            current=state.completed_count, total=total,
            partial_content=rendered,
        )
        return self._outcome(handle, RunStatus.COMPLETE)

    def _outcome(self, handle: JobHandle, status: RunStatus, **kwargs) -> RunOutcome:
        state = handle.state
        return RunOutcome(
            status=status,
            completed=state.completed_count,
            total=handle.plan.unit_count,
            degraded_units=[
                r.unit_id for r in state.accumulated_results if r.status is UnitStatus.DEGRADED
            ],
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, handle: JobHandle, status: str, error_message: Optional[str] = None) -> None:
        handle.status = status
        if self.store is None:
            return
        handle.state.resumable = True
        try:
            self.store.save(handle.plan, handle.state, status, error_message)
        except PersistenceError:
            handle.state.resumable = False
            raise

    def _persist_or_report(self, handle: JobHandle, status: str) -> None:
        try:
            self._persist(handle, status)
        except PersistenceError as e:
            handle.progress.emit(
                ProgressPhase.ERROR,
                f"Could not save progress: {e.message}. "
                f"{handle.state.completed_count} of {handle.plan.unit_count} units completed",
                current=handle.state.completed_count, total=handle.plan.unit_count,
            )
            raise

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _with_failures(self, state: JobState) -> List[UnitResult]:
        failed = [
            UnitResult(unit_id=uid, status=UnitStatus.FAILED, error_message=error)
            for uid, error in state.failures.items()
        ]
        return list(state.accumulated_results) + failed

    def render(self, handle: JobHandle) -> str:
        """Aggregated output so far, as display text."""
        plan, state = handle.plan, handle.state
        if plan.kind.is_generative:
            return combine(plan, self._with_failures(state))
        if plan.kind is JobKind.OUTLINE:
            return render_outline(plan.title, ordered_items(state.accumulated_results))
        return render_items(merge_results(state.accumulated_results))

    def output(self, handle: JobHandle) -> JobOutputResponse:
        plan, state = handle.plan, handle.state
        if plan.kind.is_generative:
            return JobOutputResponse(
                document_id=state.document_id,
                kind=plan.kind,
                document=combine(plan, self._with_failures(state)),
            )
        if plan.kind is JobKind.OUTLINE:
            sections = ordered_items(state.accumulated_results)
            return JobOutputResponse(
                document_id=state.document_id,
                kind=plan.kind,
                items=sections,
                display=render_outline(plan.title, sections),
            )
        items = merge_results(state.accumulated_results)
        signal = summarize_signal(items, plan.input_length) if plan.kind is JobKind.SIGNAL else None
        return JobOutputResponse(
            document_id=state.document_id,
            kind=plan.kind,
            items=items,
            display=render_items(items),
            signal=signal,
        )
