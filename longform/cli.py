"""Command-line entry point: plan, run, resume and inspect jobs."""

import argparse
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .core.config import settings
from .core.logging_config import setup_logging
from .database import SessionLocal, init_db
from .exceptions import LongformError
from .repositories.job_repository import JobRepository
from .schemas.job import JobCreateRequest, RunMode, RunRequest, RunStatus
from .schemas.plan import JobKind
from .schemas.progress import ProgressEvent
from .services.job_controller import PRESETS, JobHandle
from .services.job_service import JobService

ANALYSIS_KINDS = [JobKind.QUOTES, JobKind.POSITIONS, JobKind.ARGUMENTS, JobKind.SIGNAL, JobKind.OUTLINE]


def parse_units(value: str) -> List[int]:
    """Parse "4-9,12" into [4, 5, 6, 7, 8, 9, 12]."""
    units: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                start, end = (int(x) for x in part.split("-", 1))
                if end < start:
                    raise ValueError
                units.extend(range(start, end + 1))
            else:
                units.append(int(part))
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid unit range: {part!r}")
    return sorted(set(units))


def _read(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise SystemExit(f"[Error] Cannot read {path}: {e}")


def _print_event(event: ProgressEvent) -> None:
    counter = f" {event.current}/{event.total}" if event.total else ""
    print(f"[{event.phase.value}{counter}] {event.message}", flush=True)


def _install_cancel(handle: JobHandle) -> None:
    """First Ctrl-C stops the run before its next unit; completed units are kept."""
    def _handler(signum, frame):
        print(f"\n[Shutdown] Received {signal.Signals(signum).name}, stopping after the current unit...")
        handle.cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _emit_output(service: JobService, db, document_id: str, output_path: Optional[str]) -> None:
    output = service.output(db, document_id)
    if output.document is not None:
        text = output.document
    else:
        text = output.display or "(no items extracted)"
        if output.signal is not None:
            s = output.signal
            text += (
                f"\n\nSignal score: {s.score}/100 ({s.label})"
                f"\nSignal ratio: {s.ratio:.2%} "
                f"({s.total_signal_length:,} of {s.total_input_length:,} characters)"
            )
    if output_path:
        Path(output_path).write_text(text, encoding="utf-8")
        print(f"Output written to {output_path}")
    else:
        print()
        print(text)


def _run(service: JobService, db, handle: JobHandle, args) -> int:
    handle.progress.subscribe(_print_event)
    _install_cancel(handle)
    request = RunRequest(
        units=args.units,
        preset=args.preset,
        mode=RunMode.BATCH if args.batch else RunMode.INTERACTIVE,
    )
    try:
        outcome = service.run(db, handle.document_id, request)
    finally:
        handle.progress.unsubscribe(_print_event)
    _emit_output(service, db, handle.document_id, args.output)

    print()
    print(f"Document id: {handle.document_id}")
    if outcome.status is RunStatus.COMPLETE:
        return 0
    if outcome.failed_unit is not None:
        print(f"Unit {outcome.failed_unit} failed: {outcome.error}")
    print(f"Resume with: longform resume {handle.document_id}")
    return 1


def _create_and_run(args, request: JobCreateRequest) -> int:
    db = SessionLocal()
    try:
        service = JobService()
        handle = service.create_job(db, request)
        plan = handle.plan
        print("=" * 70)
        print(f"{plan.title}  ({plan.unit_count} units, ~{plan.total_target_size:,} words)")
        if plan.degraded:
            print("Plan uses generic structure (planning output was unusable)")
        print("=" * 70)
        print(plan.overview())
        print()
        if args.plan_only:
            print(f"Document id: {handle.document_id}")
            return 0
        return _run(service, db, handle, args)
    finally:
        db.close()


def cmd_write(args) -> int:
    return _create_and_run(args, JobCreateRequest(
        kind=JobKind.WRITE,
        provider=args.provider,
        prompt=args.prompt,
        source_packet=_read(args.source_packet) if args.source_packet else None,
        target_words=args.words,
        pure=args.pure,
    ))


def cmd_rewrite(args) -> int:
    return _create_and_run(args, JobCreateRequest(
        kind=JobKind.REWRITE,
        provider=args.provider,
        prompt=args.instructions,
        source_text=_read(args.file),
        target_words=args.words,
    ))


def cmd_custom(args) -> int:
    return _create_and_run(args, JobCreateRequest(
        kind=JobKind.CUSTOM,
        provider=args.provider,
        prompt=args.instructions,
        source_text=_read(args.file),
        target_words=args.words,
    ))


def cmd_analyze(args) -> int:
    return _create_and_run(args, JobCreateRequest(
        kind=JobKind(args.kind),
        provider=args.provider,
        prompt=args.instructions or "",
        source_text=_read(args.file),
        author=args.author,
    ))


def cmd_resume(args) -> int:
    db = SessionLocal()
    try:
        service = JobService()
        handle = service.get_handle(db, args.document_id)
        print(f"Resuming {handle.plan.title}: {handle.state.completed_count} of "
              f"{handle.plan.unit_count} units already done")
        return _run(service, db, handle, args)
    finally:
        db.close()


def cmd_status(args) -> int:
    db = SessionLocal()
    try:
        if not args.document_id:
            records = JobRepository(db).list_recent(args.limit)
            if not records:
                print("No jobs yet.")
            for record in records:
                print(f"{record.document_id}  {record.kind:<10} {record.status:<10} {record.updated_at}")
            return 0

        status = JobService().status(db, args.document_id)
        print(f"{status.title} [{status.kind.value}] {status.status}: "
              f"{status.completed}/{status.total} units done")
        if not status.resumable:
            print("Last save failed; progress after that point was not stored")
        for unit in status.units:
            line = f"  {unit.id:>3}. {unit.phase.value:<11} {unit.label}"
            if unit.last_error:
                line += f"  ({unit.last_error})"
            print(line)
        return 0
    finally:
        db.close()


def _add_run_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--provider", default=None,
                   help=f"Generation provider id (default: {settings.default_provider})")
    p.add_argument("--units", type=parse_units, default=None,
                   help='Only run these unit ordinals, e.g. "4-9" or "1,3,5"')
    p.add_argument("--preset", choices=PRESETS, default=None,
                   help="Run a named slice of the units")
    p.add_argument("--batch", action="store_true",
                   help="Use the longer batch-mode delay between units")
    p.add_argument("--output", "-o", default=None, help="Write the result to this file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="longform",
        description="Long document jobs for context-limited language models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s write "Assess Kant's theory of freedom" --words 20000
  %(prog)s analyze quotes book.txt --author "Immanuel Kant"
  %(prog)s rewrite draft.txt --instructions "Tighten the prose" --words 12000
  %(prog)s custom book.txt --instructions "Evaluate each argument"
  %(prog)s analyze outline book.txt
  %(prog)s resume 3f2a... --units 6-8
  %(prog)s status
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show log output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("write", help="Write a long answer to a prompt")
    p.add_argument("prompt")
    p.add_argument("--words", type=int, default=None,
                   help=f"Target length ({settings.min_target_words}-{settings.max_target_words} words)")
    p.add_argument("--source-packet", default=None, help="File with primary source material")
    p.add_argument("--pure", action="store_true", help="Forbid knowledge outside the source packet")
    p.add_argument("--plan-only", action="store_true", help="Plan the job without running it")
    _add_run_options(p)
    p.set_defaults(func=cmd_write)

    p = sub.add_parser("rewrite", help="Rewrite a large document unit by unit")
    p.add_argument("file")
    p.add_argument("--instructions", required=True)
    p.add_argument("--words", type=int, default=None,
                   help="Target output length; defaults to the source length")
    p.add_argument("--plan-only", action="store_true")
    _add_run_options(p)
    p.set_defaults(func=cmd_rewrite)

    p = sub.add_parser("custom", help="Apply free-form instructions to a large document unit by unit")
    p.add_argument("file")
    p.add_argument("--instructions", required=True)
    p.add_argument("--words", type=int, default=None, help="Target output length")
    p.add_argument("--plan-only", action="store_true")
    _add_run_options(p)
    p.set_defaults(func=cmd_custom)

    p = sub.add_parser("analyze", help="Extract quotes, positions or arguments, score signal density, or outline a text")
    p.add_argument("kind", choices=[k.value for k in ANALYSIS_KINDS])
    p.add_argument("file")
    p.add_argument("--author", default="", help="Attribution for extracted items")
    p.add_argument("--instructions", default=None, help="Extra extraction instructions")
    p.add_argument("--plan-only", action="store_true")
    _add_run_options(p)
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("resume", help="Continue a job from where it stopped")
    p.add_argument("document_id")
    _add_run_options(p)
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("status", help="Show one job, or list recent jobs")
    p.add_argument("document_id", nargs="?")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    # Provider keys (OPENAI_API_KEY, ...) are read by LiteLLM from the environment.
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(
        log_level=settings.log_level if args.verbose else "WARNING",
        log_format="text",
        stream=sys.stderr,
    )
    init_db()
    try:
        return args.func(args)
    except LongformError as e:
        print(f"[Error] {e.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
