"""Command line interface.

    python -m ptcadence plan --catalog catalog.json --session 1
    python -m ptcadence run --catalog catalog.json --session 1 --mute
    python -m ptcadence checkpoint --instance 1-2026-10-18
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

from .catalog import JsonCatalogStore
from .engine.output import NullOutput, PygameOutput
from .engine.tone import ToneSynthesizer
from .logging_utils import LogMode, get_default_log_path, setup_logging
from .session.errors import ConfigurationError
from .session.events import SessionEvent, SessionEventEmitter, SessionEventType
from .session.exercise import build_plan_steps
from .session.lifecycle import AsyncTicker, ResumeResult, SessionLifecycleController
from .session.plan import build_phase_plan, planned_duration
from .session_store import JsonCheckpointStore
from .settings import JsonSettingsProvider, PlayerSettings, SettingsProvider, StaticSettingsProvider


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-mode",
        choices=[mode.value for mode in LogMode],
        default=LogMode.NORMAL.value,
        help="Logging preset: quiet suppresses console info, perf forces DEBUG",
    )
    parser.add_argument(
        "--log-file",
        default=str(get_default_log_path()),
        help="Path to log file (default: per-user ptcadence directory)",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        default="plain",
        help="Log format (plain or json)",
    )


def _build_logging_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    _add_logging_args(parent)
    return parent


def build_parser() -> argparse.ArgumentParser:
    logging_parent = _build_logging_parent()
    parser = argparse.ArgumentParser(
        prog="ptcadence",
        description="Physical-therapy session player",
        parents=[logging_parent],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_subparser(name: str, **kwargs: object) -> argparse.ArgumentParser:
        parents = list(kwargs.pop("parents", []))
        parents.insert(0, logging_parent)
        return sub.add_parser(name, parents=parents, **kwargs)

    session_parent = argparse.ArgumentParser(add_help=False)
    session_parent.add_argument("--catalog", required=True, help="Catalog JSON with exercises and sessions")
    session_parent.add_argument("--session", type=int, required=True, help="Session definition id")
    session_parent.add_argument("--settings", default=None, help="Settings JSON (default: built-in defaults)")

    p_plan = add_subparser("plan", parents=[session_parent], help="Print the expanded phase plan")
    p_plan.add_argument("--json", action="store_true", help="Emit JSON instead of a table")

    p_run = add_subparser("run", parents=[session_parent], help="Play a session headless (Ctrl+C ends early)")
    p_run.add_argument("--mute", action="store_true", help="Do not open the audio device")
    p_run.add_argument("--tick-interval", type=float, default=None, help="Tick interval in seconds")
    p_run.add_argument("--data-dir", default=None, help="Directory for checkpoints and session records")
    p_run.add_argument("--instance", default=None, help="Session instance id (default: <session>-<date>)")
    p_run.add_argument("--resume", action="store_true", help="Resume from a stored checkpoint if present")

    p_ckpt = add_subparser("checkpoint", help="Print the stored checkpoint for a session instance")
    p_ckpt.add_argument("--instance", required=True, help="Session instance id")
    p_ckpt.add_argument("--data-dir", default=None, help="Directory for checkpoints and session records")

    return parser


def _settings_provider(path: Optional[str]) -> SettingsProvider:
    if path:
        return JsonSettingsProvider(Path(path))
    return StaticSettingsProvider(PlayerSettings())


def _store(data_dir: Optional[str]) -> JsonCheckpointStore:
    if data_dir:
        return JsonCheckpointStore.in_directory(Path(data_dir))
    return JsonCheckpointStore()


def cmd_plan(args: argparse.Namespace) -> int:
    catalog = JsonCatalogStore(Path(args.catalog))
    settings = _settings_provider(args.settings).snapshot()
    definition = catalog.get_session_definition(args.session)
    steps = build_plan_steps(definition, catalog.exercises_for(definition), settings)
    plan = build_phase_plan(
        steps,
        lead_in_seconds=settings.start_countdown_duration,
        starting_side=settings.starting_side,
    )

    if args.json:
        print(json.dumps({
            "session": definition.to_dict(),
            "fingerprint": plan.fingerprint(),
            "total_duration": plan.total_duration(),
            "planned_duration": planned_duration(steps, settings.start_countdown_duration),
            "phases": [phase.to_dict() for phase in plan],
        }, indent=2))
        return 0

    print(f"{definition.name}: {len(plan)} phases, {plan.total_duration():.1f}s")
    for index, phase in enumerate(plan):
        name = plan.steps[phase.exercise_index].name if phase.exercise_index is not None else ""
        print(f"  {index:3d}  {phase.duration_seconds:6.1f}s  {phase.label():<28} {name}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    log = logging.getLogger(__name__)
    output = NullOutput() if args.mute else PygameOutput()
    emitter = SessionEventEmitter()
    controller = SessionLifecycleController(
        JsonCatalogStore(Path(args.catalog)),
        _store(args.data_dir),
        settings_provider=_settings_provider(args.settings),
        synthesizer=ToneSynthesizer(output),
        emitter=emitter,
    )

    def _on_phase(event: SessionEvent) -> None:
        snapshot = controller.snapshot()
        if snapshot is not None:
            print(f"[{snapshot.phase_index:3d}] {snapshot.phase.label():<28} {snapshot.exercise_name or ''}")

    def _on_audio(event: SessionEvent) -> None:
        print("audio unavailable; continuing silently", file=sys.stderr)

    emitter.subscribe(SessionEventType.PHASE_START, _on_phase)
    emitter.subscribe(SessionEventType.AUDIO_UNAVAILABLE, _on_audio)

    started = False
    if args.resume:
        result = controller.resume_session(args.session, instance_id=args.instance)
        if result is ResumeResult.RESUMED:
            started = controller.resume()
        elif result is ResumeResult.STALE:
            print("stored progress no longer matches this session; starting fresh", file=sys.stderr)
    if not started:
        controller.start(args.session, instance_id=args.instance)

    ticker = AsyncTicker(controller, interval=args.tick_interval)
    try:
        asyncio.run(ticker.run())
    except KeyboardInterrupt:
        log.info("Interrupted; ending session early")
        controller.end_early()
    finally:
        controller.shutdown()
        output.close()

    record = controller.session_record
    if record is not None:
        print(f"{record['status']}: {len(record['completed_exercises'])} exercises, "
              f"{record['cumulative_elapsed_seconds']:.1f}s")
    return 0


def cmd_checkpoint(args: argparse.Namespace) -> int:
    record = _store(args.data_dir).load_checkpoint(args.instance)
    if record is None:
        print(f"no checkpoint for {args.instance}", file=sys.stderr)
        return 1
    print(json.dumps(record.to_dict(), indent=2))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=args.log_level,
        log_file=args.log_file,
        json_format=(args.log_format == "json"),
        log_mode=args.log_mode,
        add_console=True,
    )

    handlers = {"plan": cmd_plan, "run": cmd_run, "checkpoint": cmd_checkpoint}
    try:
        return handlers[args.command](args)
    except ConfigurationError as e:
        print(f"{args.command}: {e}", file=sys.stderr)
        return 2
    except FileNotFoundError as e:
        print(f"{args.command}: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
