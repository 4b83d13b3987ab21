"""
encodeflow CLI - thin entrypoint over the orchestrator.

Commands:
- validate: Check a preset JSON file
- build:    Print the FFmpeg command(s) a preset resolves to for one source
- run:      Encode one source and follow the job to completion
- serve:    Start the HTTP control service

Exit Codes:
===========
- 0: Success
- 1: Validation error (invalid preset)
- 2: Build or execution error (unbuildable preset, job failed)
- 3: Job canceled
- 4: System error (file not found, bad JSON, probe failure, etc.)
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, NoReturn, Optional

from pydantic import ValidationError

from .commands.errors import BuildError
from .commands.models import OutputTarget, Overrides
from .execution.progress import format_eta
from .jobs.errors import SubmissionRejected
from .jobs.models import JobState
from .logging_setup import configure_logging
from .media.errors import ProbeError
from .media.models import SourceDescriptor
from .media.probe import FFprobeProbe
from .presets.errors import PresetValidationError
from .presets.models import PresetDefinition
from .presets.validator import load_preset
from .settings import EngineSettings, SettingsError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_EXECUTION = 2
EXIT_CANCELED = 3
EXIT_SYSTEM = 4


def _load_json(path: Path, what: str) -> Any:
    """
    Raises:
        SystemExit(4): File not found or invalid JSON
    """
    if not path.exists():
        print(f"ERROR: {what} file not found: {path}", file=sys.stderr)
        sys.exit(EXIT_SYSTEM)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON in {path}: {e}", file=sys.stderr)
        sys.exit(EXIT_SYSTEM)


def _load_preset(path: Path) -> PresetDefinition:
    """
    Raises:
        SystemExit(1): Preset is invalid
        SystemExit(4): File not found or invalid JSON
    """
    data = _load_json(path, "Preset")
    if not isinstance(data, dict):
        print(f"ERROR: Preset file must hold a JSON object: {path}", file=sys.stderr)
        sys.exit(EXIT_SYSTEM)
    try:
        return load_preset(data)
    except PresetValidationError as e:
        print(f"✗ Preset '{e.preset_id}' is invalid:", file=sys.stderr)
        for issue in e.issues:
            print(f"  - {issue}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION)


def _load_settings(args: argparse.Namespace) -> EngineSettings:
    try:
        settings = EngineSettings.from_env(config_file=Path(args.config) if args.config else None)
    except (SettingsError, OSError, json.JSONDecodeError) as e:
        print(f"ERROR: Invalid settings: {e}", file=sys.stderr)
        sys.exit(EXIT_SYSTEM)
    if getattr(args, "ffmpeg", None):
        settings = settings.with_updates(ffmpeg_path=args.ffmpeg)
    if getattr(args, "ffprobe", None):
        settings = settings.with_updates(ffprobe_path=args.ffprobe)
    return settings


def _load_source(args: argparse.Namespace, settings: EngineSettings) -> SourceDescriptor:
    """
    A source descriptor from --source-json, or by probing --source.

    Raises:
        SystemExit(4): Descriptor unreadable or probe failed
    """
    if args.source_json:
        data = _load_json(Path(args.source_json), "Source descriptor")
        try:
            return SourceDescriptor.model_validate(data)
        except ValidationError as e:
            print(f"ERROR: Invalid source descriptor: {e}", file=sys.stderr)
            sys.exit(EXIT_SYSTEM)
    try:
        return FFprobeProbe(settings.ffprobe_path).probe(args.source)
    except ProbeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_SYSTEM)


def _overrides(args: argparse.Namespace) -> Overrides:
    return Overrides(
        quality=args.quality,
        bitrate=args.bitrate,
        width=args.width,
        height=args.height,
        encoder_preset=args.encoder_preset,
        subtitle_language=args.subtitle_language,
    )


def cmd_validate(args: argparse.Namespace) -> NoReturn:
    """
    Validate a preset JSON file.

    Exit codes:
        0: Preset is valid
        1: Validation error
        4: File not found or JSON parse error
    """
    preset_path = Path(args.preset).resolve()
    preset = _load_preset(preset_path)
    print(f"✓ Preset is valid: {preset.key}")
    print(f"  Container: {preset.container}")
    print(f"  Encoder: {preset.video.encoder} ({preset.video.rate_control.value})")
    print(f"  Passes: {2 if preset.video.two_pass else 1}")
    sys.exit(EXIT_OK)


def cmd_build(args: argparse.Namespace) -> NoReturn:
    """
    Print the command(s) for one source without running them.

    Exit codes:
        0: Commands built
        1: Validation error
        2: Build error
        4: File, settings or probe error
    """
    from .commands.builder import build_commands

    settings = _load_settings(args)
    preset = _load_preset(Path(args.preset).resolve())
    source = _load_source(args, settings)
    target = OutputTarget(path=args.output, overwrite=args.overwrite)
    try:
        commands = build_commands(
            preset,
            source,
            _overrides(args),
            target,
            ffmpeg_binary=settings.ffmpeg_path,
            vaapi_device=settings.vaapi_device,
        )
    except BuildError as e:
        print(f"✗ Build failed: {e}", file=sys.stderr)
        sys.exit(EXIT_EXECUTION)

    if args.json:
        print(json.dumps([c.model_dump() for c in commands], indent=2))
    else:
        for command in commands:
            print(command.command_line())
    sys.exit(EXIT_OK)


def cmd_run(args: argparse.Namespace) -> NoReturn:
    """
    Encode one source and follow it to a terminal state.

    Ctrl-C cancels the job (the process tree is killed) and waits for it
    to settle.

    Exit codes:
        0: Job succeeded
        1: Validation error
        2: Build error or job failed
        3: Job canceled
        4: File, settings or probe error
    """
    from .orchestrator import Orchestrator

    settings = _load_settings(args)
    preset = _load_preset(Path(args.preset).resolve())
    source = _load_source(args, settings)
    target = OutputTarget(path=args.output, overwrite=args.overwrite)

    orchestrator = Orchestrator(settings)
    try:
        try:
            job_id = orchestrator.submit(preset, source, _overrides(args), target, priority=args.priority)
        except (BuildError, SubmissionRejected) as e:
            print(f"✗ Submission failed: {e}", file=sys.stderr)
            sys.exit(EXIT_EXECUTION)

        final = None
        subscription = orchestrator.subscribe(job_id)
        try:
            for snapshot in subscription:
                final = snapshot
                if not args.quiet:
                    print(
                        f"[{snapshot.state.value}] pass {snapshot.current_pass}/{snapshot.pass_count} "
                        f"{snapshot.progress * 100:5.1f}% eta {format_eta(snapshot.eta_seconds)}",
                        file=sys.stderr,
                    )
        except KeyboardInterrupt:
            print("Canceling...", file=sys.stderr)
            orchestrator.cancel(job_id)
            for snapshot in subscription:
                final = snapshot
        finally:
            subscription.close()
    finally:
        orchestrator.shutdown()

    print(json.dumps(final.model_dump(mode="json"), indent=2))
    if final.state == JobState.SUCCEEDED:
        sys.exit(EXIT_OK)
    if final.state == JobState.CANCELED:
        sys.exit(EXIT_CANCELED)
    sys.exit(EXIT_EXECUTION)


def cmd_serve(args: argparse.Namespace) -> NoReturn:
    """Run the HTTP control service until interrupted."""
    import uvicorn

    from .main import create_app
    from .orchestrator import Orchestrator

    settings = _load_settings(args)
    app = create_app(Orchestrator(settings))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    sys.exit(EXIT_OK)


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("preset", help="Path to preset JSON file")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--source", help="Source media file (probed with ffprobe)")
    source.add_argument("--source-json", help="Source descriptor JSON file (no probing)")
    parser.add_argument("--output", required=True, help="Output file path")
    parser.add_argument("--overwrite", action="store_true", help="Allow replacing an existing output")
    parser.add_argument("--ffmpeg", help="FFmpeg binary (default from settings)")
    parser.add_argument("--ffprobe", help="ffprobe binary (default from settings)")
    parser.add_argument("--quality", type=float, help="Override CRF / CQ value")
    parser.add_argument("--bitrate", help="Override target bitrate, e.g. 4500k")
    parser.add_argument("--width", type=int, help="Override output width")
    parser.add_argument("--height", type=int, help="Override output height")
    parser.add_argument("--encoder-preset", help="Override encoder speed preset")
    parser.add_argument("--subtitle-language", help="Override preferred subtitle language")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="encodeflow",
        description="encodeflow - FFmpeg encoding orchestration",
    )
    parser.add_argument("--config", help="Engine settings JSON file (default: ENCODEFLOW_CONFIG)")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    parser_validate = subparsers.add_parser("validate", help="Validate a preset JSON file")
    parser_validate.add_argument("preset", help="Path to preset JSON file")
    parser_validate.set_defaults(func=cmd_validate)

    parser_build = subparsers.add_parser("build", help="Print the FFmpeg command(s) for a source")
    _add_source_args(parser_build)
    parser_build.add_argument("--json", action="store_true", help="Print command specs as JSON")
    parser_build.set_defaults(func=cmd_build)

    parser_run = subparsers.add_parser("run", help="Encode one source and wait for it")
    _add_source_args(parser_run)
    parser_run.add_argument("--priority", type=int, default=0, help="Job priority (higher first)")
    parser_run.add_argument("--quiet", action="store_true", help="Do not print progress")
    parser_run.set_defaults(func=cmd_run)

    parser_serve = subparsers.add_parser("serve", help="Run the HTTP control service")
    parser_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser_serve.add_argument("--port", type=int, default=8085, help="Port (default: 8085)")
    parser_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    args = build_parser().parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_SYSTEM)
    args.func(args)


if __name__ == "__main__":
    main()
