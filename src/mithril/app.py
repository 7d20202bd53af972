"""Command-line bootstrap for the Mithril assistant."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import ClientSettings, InferenceClient, InferenceError
from .ai.memory.ledger import LedgerStore, MemoryLedger
from .ai.orchestration.orchestrator import Orchestrator, OrchestratorConfig, TurnResult
from .editor.document_model import BufferEditor
from .services import telemetry
from .services.settings import Settings, SettingsStore
from .services.workspace import LocalFileSystem, SubprocessCommandRunner
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

PROMPT = "mithril> "
REPL_HELP = """Commands:
  /quit              exit
  /models            list installed models
  /memory            show session memory stats
  /reset             archive the memory session and start a new one
  /resume            continue a plan halted by a failed step
  /cancel            drop the current plan
  /open PATH         open a file in the buffer
  /select START END  select lines of the open file
  /attach [START END]  attach the selection (or the given lines) as a chunk
  /chunks            list attached chunks
  /detach [N]        remove chunk N, or all chunks
  /events [N]        show the last N telemetry events
Anything else is sent to the assistant. Ctrl-C cancels a running request."""


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file + console logging for the CLI."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError, TypeError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_orchestrator(
    settings: Settings,
    *,
    client: InferenceClient,
    editor: BufferEditor,
    memory: MemoryLedger | None,
    output: TextIO,
) -> Orchestrator:
    def _status(text: str) -> None:
        output.write(f"* {text}\n")
        output.flush()

    return Orchestrator(
        client,
        file_system=LocalFileSystem(),
        editor=editor,
        command_runner=SubprocessCommandRunner(default_timeout=settings.command_timeout),
        memory=memory,
        config=OrchestratorConfig.from_settings(settings),
        on_status=_status,
    )


def build_memory(settings: Settings) -> MemoryLedger:
    store = LedgerStore(Path(settings.memory_dir).expanduser())
    return MemoryLedger(
        store,
        context_turns=settings.context_turns,
        context_chars=settings.context_chars,
    )


@dataclass(slots=True)
class ReplSession:
    """Objects shared by the REPL loop and its slash commands."""

    runner: asyncio.Runner
    orchestrator: Orchestrator
    client: InferenceClient
    editor: BufferEditor
    memory: MemoryLedger
    events: telemetry.InMemoryTelemetrySink
    output: TextIO


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``mithril`` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("MITHRIL_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("MITHRIL_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.workspace:
        cli_overrides["workspace_root"] = str(Path(args.workspace).expanduser().resolve())

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    memory = build_memory(settings)
    message = " ".join(args.message).strip()
    if args.reset_memory:
        archived = memory.reset()
        print(f"Memory archived to {archived}" if archived else "Memory session was already empty.")
        if not message and not args.list_models:
            return 0

    events = telemetry.InMemoryTelemetrySink()
    events.attach(*telemetry.EVENT_NAMES)
    runner = asyncio.Runner()
    client = InferenceClient(ClientSettings.from_settings(settings))
    editor = BufferEditor()
    orchestrator = build_orchestrator(
        settings, client=client, editor=editor, memory=memory, output=sys.stdout
    )
    try:
        if args.open and not _open_file(editor, args.open, sys.stdout):
            return 1
        if args.list_models:
            return runner.run(_print_models(client, sys.stdout))
        if message:
            return runner.run(_run_turn(orchestrator, editor, message, sys.stdout))
        session = ReplSession(runner, orchestrator, client, editor, memory, events, sys.stdout)
        return _repl(session, sys.stdin)
    except KeyboardInterrupt:
        _LOGGER.info("Shutdown requested by user.")
        return 130
    finally:
        runner.run(_shutdown(orchestrator, client))
        runner.close()
        events.detach(*telemetry.EVENT_NAMES)


async def _shutdown(orchestrator: Orchestrator, client: InferenceClient) -> None:
    await orchestrator.aclose()
    await client.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


# ----------------------------------------------------------------------
# Turns and REPL
# ----------------------------------------------------------------------
async def _run_turn(orchestrator: Orchestrator, editor: BufferEditor, message: str, output: TextIO) -> int:
    result = await orchestrator.handle_message(message)
    _print_result(result, output)
    _save_buffer(editor, output)
    return 0 if result.success else 1


async def _print_models(client: InferenceClient, output: TextIO) -> int:
    try:
        models = await client.list_models(force_refresh=True)
    except InferenceError as exc:
        output.write(f"Unable to list models: {exc}\n")
        return 1
    if not models:
        output.write("No models installed.\n")
    for name in models:
        output.write(f"{name}\n")
    return 0


def _repl(session: ReplSession, stdin: TextIO) -> int:
    output = session.output
    output.write("Mithril ready. Type /help for commands.\n")
    while True:
        output.write(PROMPT)
        output.flush()
        line = stdin.readline()
        if not line:
            output.write("\n")
            return 0
        text = line.strip()
        if not text:
            continue
        if text.startswith("/"):
            if _handle_command(session, text):
                return 0
            continue
        try:
            session.runner.run(_run_turn(session.orchestrator, session.editor, text, output))
        except KeyboardInterrupt:
            session.orchestrator.cancel()
            output.write("\nRequest cancelled.\n")


def _handle_command(session: ReplSession, text: str) -> bool:
    """Execute one slash command; return ``True`` when the REPL should exit."""

    command, *args = text.split()
    command = command.lower()
    orchestrator, editor, output = session.orchestrator, session.editor, session.output
    if command in {"/quit", "/exit"}:
        return True
    if command == "/help":
        output.write(REPL_HELP + "\n")
    elif command == "/models":
        session.runner.run(_print_models(session.client, output))
    elif command == "/memory":
        json.dump(session.memory.stats(), output, indent=2)
        output.write("\n")
    elif command == "/reset":
        archived = session.memory.reset()
        output.write(f"Memory archived to {archived}\n" if archived else "Memory session was already empty.\n")
    elif command == "/resume":
        result = session.runner.run(orchestrator.resume_plan())
        _print_result(result, output)
        _save_buffer(editor, output)
    elif command == "/cancel":
        output.write("Cancelled.\n" if orchestrator.cancel() else "Nothing to cancel.\n")
    elif command == "/open" and args:
        _open_file(editor, " ".join(args), output)
    elif command == "/select":
        lines = _parse_line_range(args, output)
        if lines is not None:
            try:
                editor.select_lines(*lines)
            except RuntimeError as exc:
                output.write(f"{exc}\n")
    elif command == "/attach":
        _attach_chunk(orchestrator, editor, args, output)
    elif command == "/chunks":
        chunks = orchestrator.chunks.chunks
        if not chunks:
            output.write("No chunks attached.\n")
        for index, chunk in enumerate(chunks, start=1):
            marker = " (modified)" if chunk.modified else ""
            output.write(f"{index}. {chunk.as_target().label}{marker}\n")
    elif command == "/detach":
        _detach_chunk(orchestrator, args, output)
    elif command == "/events":
        _print_events(session.events, args, output)
    else:
        output.write(f"Unknown command {command}. Type /help for commands.\n")
    return False


def _print_events(events: telemetry.InMemoryTelemetrySink, args: Sequence[str], output: TextIO) -> None:
    try:
        limit = int(args[0]) if args else 20
    except ValueError:
        output.write("Usage: /events [N]\n")
        return
    recent = events.tail(max(1, limit))
    if not recent:
        output.write("No events recorded.\n")
    for event in recent:
        output.write(f"{event.name} {json.dumps(event.payload, sort_keys=True, default=str)}\n")


def _attach_chunk(orchestrator: Orchestrator, editor: BufferEditor, args: Sequence[str], output: TextIO) -> None:
    if args:
        lines = _parse_line_range(args, output)
        if lines is None:
            return
        try:
            editor.select_lines(*lines)
        except RuntimeError as exc:
            output.write(f"{exc}\n")
            return
    try:
        chunk = orchestrator.chunks.attach_selection(editor)
    except ValueError as exc:
        output.write(f"{exc}\n")
        return
    if chunk is None:
        output.write("Open a file and select some lines first.\n")
        return
    output.write(f"Attached {chunk.as_target().label}\n")


def _detach_chunk(orchestrator: Orchestrator, args: Sequence[str], output: TextIO) -> None:
    chunks = orchestrator.chunks
    if not args:
        chunks.clear()
        output.write("Removed all chunks.\n")
        return
    try:
        index = int(args[0])
    except ValueError:
        output.write("Usage: /detach [N]\n")
        return
    attached = chunks.chunks
    if not 1 <= index <= len(attached):
        output.write(f"No chunk {index}.\n")
        return
    chunks.remove(attached[index - 1].id)
    output.write(f"Removed chunk {index}.\n")


def _parse_line_range(args: Sequence[str], output: TextIO) -> tuple[int, int] | None:
    try:
        start, end = (int(value) for value in args[:2])
    except ValueError:
        output.write("Usage: START END (1-based line numbers)\n")
        return None
    if len(args) < 2 or start < 1 or end < start:
        output.write("Usage: START END (1-based line numbers)\n")
        return None
    return start, end


def _open_file(editor: BufferEditor, raw_path: str, output: TextIO) -> bool:
    path = Path(raw_path).expanduser()
    try:
        document = editor.open(path)
    except (OSError, UnicodeDecodeError) as exc:
        output.write(f"Unable to open {path}: {exc}\n")
        return False
    output.write(f"Opened {path} ({document.line_count} lines)\n")
    return True


def _print_result(result: TurnResult, output: TextIO) -> None:
    output.write(result.response.rstrip() + "\n")
    output.flush()


def _save_buffer(editor: BufferEditor, output: TextIO) -> None:
    if not editor.dirty:
        return
    try:
        saved = editor.save()
    except OSError as exc:
        output.write(f"Failed to save {editor.current_file_path}: {exc}\n")
        return
    if saved is not None:
        output.write(f"Saved {saved}\n")


# ----------------------------------------------------------------------
# Argument parsing and settings overrides
# ----------------------------------------------------------------------
def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mithril",
        add_help=True,
        description="Ask a local model to plan and carry out changes in a workspace.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.mithril/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--workspace", metavar="DIR", help="Workspace folder for created files and commands.")
    parser.add_argument("--open", metavar="FILE", help="Open FILE in the editor buffer before the first turn.")
    parser.add_argument("--list-models", action="store_true", help="List installed models and exit.")
    parser.add_argument(
        "--reset-memory",
        action="store_true",
        help="Archive the current memory session before starting.",
    )
    parser.add_argument("message", nargs="*", help="Run a single request instead of the interactive prompt.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if optional and normalized.lower() in {"none", "null", ""}:
        return None
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
        "log_path": str(logging_utils.get_log_path() or ""),
    }
    output = {"settings": asdict(settings), "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("MITHRIL_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
