"""
State synchronizer for sfconfig.

Owns the in-memory state of every engine, applies patches (deep merge,
validate, back up, write), watches the engine files for external edits and
broadcasts every state change to subscribers. Also provides the ``sfconfig``
command line.
"""

import argparse
import copy
import json
import logging
import os
import re
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import requests
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from sfconfig_adapters import (
    RESERVED_PREFIX, EngineAdapter, default_adapters, isoformat_utc,
)
from sfconfig_backup import BackupRecord, BackupService
from sfconfig_events import DEFAULT_KEEPALIVE_INTERVAL, STATE_CHANGED, ChangeBus, StateStream
from sfconfig_settings import ServiceSettings

__version__ = '0.1.0'

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

PYPI_URL = 'https://pypi.org/pypi/sfconfig/json'
PROJECT_URL = 'https://pypi.org/project/sfconfig/'
DEFAULT_UPDATE_TIMEOUT = 5.0

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class _Absent:
    """Patch value meaning "remove this key", distinct from JSON null."""

    def __repr__(self):
        return 'ABSENT'

    def __bool__(self):
        return False


ABSENT = _Absent()


def _is_delete(value) -> bool:
    return value is None or value is ABSENT


def deep_merge(target: Any, source: Any, replace_keys: Iterable[str] = ()) -> Any:
    """Merge a patch (source) into target and return the result.

    Mappings merge recursively; lists and scalars replace. A None or ABSENT
    value deletes the key. An empty mapping, or a mapping under one of
    replace_keys, replaces the existing value instead of merging into it.
    Neither argument is modified.
    """
    if _is_delete(source):
        return target
    if not isinstance(source, dict):
        return source

    replace_keys = frozenset(replace_keys)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in source.items():
        if _is_delete(value):
            result.pop(key, None)
        elif isinstance(value, dict):
            if key in replace_keys or not value:
                result[key] = dict(value)
            else:
                existing = result.get(key)
                result[key] = deep_merge(existing if isinstance(existing, dict) else {}, value, replace_keys)
        else:
            result[key] = value
    return result


@dataclass
class EngineState:
    """In-memory state of one engine. Never handed to consumers directly."""
    id: str
    name: str
    config_path: Path
    last_modified: datetime = EPOCH
    data: Dict[str, Any] = field(default_factory=dict)
    detected: bool = False
    # Read-only values synthesized by the adapter under reserved keys
    signals: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PatchResult:
    success: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'errors': list(self.errors), 'warnings': list(self.warnings)}


def split_reserved(raw: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Separate engine configuration from reserved, adapter-synthesized keys."""
    data, signals = {}, {}
    for key, value in raw.items():
        if key.startswith(RESERVED_PREFIX):
            signals[key] = value
        else:
            data[key] = value
    return data, signals


def describe_write_error(adapter: EngineAdapter, error: Exception) -> str:
    """Turn a write failure into a message a user can act on."""
    if isinstance(error, FileNotFoundError):
        return f"Configuration file not found for {adapter.name}. File: {adapter.get_config_path()}"
    if isinstance(error, PermissionError):
        return f"Permission denied writing to {adapter.name} configuration. Check file permissions."
    if isinstance(error, (ValueError, TypeError)):
        return f"Invalid JSON format for {adapter.name}: {error}"
    return f"{adapter.name}: {error}"


def _file_signature(path: Path) -> Optional[Tuple[int, int]]:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_mtime_ns, stat.st_size


def _normalize(path) -> str:
    return os.path.normcase(os.path.abspath(os.fsdecode(path)))


def _version_tuple(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r'\d+', version))


def check_update(current: str = __version__, timeout: float = DEFAULT_UPDATE_TIMEOUT) -> Dict[str, Any]:
    """Ask PyPI for the newest release. Any failure reads as "no update"."""
    no_update = {'latest': current, 'current': current, 'url': '', 'hasUpdate': False}
    try:
        response = requests.get(PYPI_URL, timeout=timeout)
        response.raise_for_status()
        latest = response.json()['info']['version']
        has_update = _version_tuple(latest) > _version_tuple(current)
    except (requests.RequestException, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Update check failed: {e}")
        return no_update
    return {'latest': latest, 'current': current, 'url': PROJECT_URL, 'hasUpdate': has_update}


class ConfigWatcher(FileSystemEventHandler):
    """File system event handler mapping engine files back to engine ids.

    Events are debounced per engine: the callback runs once the file has
    been quiet for debounce_delay seconds, so a save made of several write
    calls reconciles once.
    """

    def __init__(self, callback: Callable[[str], Any], debounce_delay: float = 0.1):
        super().__init__()
        self.callback = callback
        self.debounce_delay = debounce_delay
        self.paths: Dict[str, Set[str]] = {}
        self.pending_syncs: Dict[str, threading.Timer] = {}
        self.lock = threading.Lock()

    def watch(self, engine_id: str, path: Path) -> None:
        self.paths.setdefault(_normalize(path), set()).add(engine_id)

    def directories(self) -> Set[str]:
        return {os.path.dirname(path) for path in self.paths}

    def on_created(self, event):
        if not event.is_directory:
            self._dispatch(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._dispatch(event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self._dispatch(event.src_path)

    def on_moved(self, event):
        # Editors often save by renaming a temp file over the original
        if not event.is_directory:
            self._dispatch(event.src_path)
            self._dispatch(event.dest_path)

    def cancel_pending(self) -> None:
        with self.lock:
            for timer in self.pending_syncs.values():
                timer.cancel()
            self.pending_syncs.clear()

    def _dispatch(self, path) -> None:
        for engine_id in sorted(self.paths.get(_normalize(path), ())):
            logger.debug(f"Detected change in {engine_id} config: {path}")
            self._schedule_sync(engine_id)

    def _schedule_sync(self, engine_id: str) -> None:
        with self.lock:
            if engine_id in self.pending_syncs:
                self.pending_syncs[engine_id].cancel()
            timer = threading.Timer(self.debounce_delay, self._execute_sync, args=(engine_id,))
            timer.daemon = True
            self.pending_syncs[engine_id] = timer
            timer.start()

    def _execute_sync(self, engine_id: str) -> None:
        with self.lock:
            self.pending_syncs.pop(engine_id, None)
        try:
            self.callback(engine_id)
        except Exception:
            logger.exception(f"Error reconciling {engine_id} after a file change")


class ConfigSynchronizer:
    """Keeps the state of every registered engine in sync with its files.

    All state mutations (refresh, patch, file-change reconciliation, restore)
    run under one re-entrant lock, so each completes before the next starts.
    Each mutation takes its snapshot under the lock and delivers it after
    releasing it. One thread at a time delivers; a thread that publishes while
    another is delivering hands its snapshot over and returns at once, so a
    subscriber may block on another thread that calls into the synchronizer.
    Snapshots queued behind a newer one are dropped, so subscribers never go
    back in time.
    """

    def __init__(self, adapters: Optional[Iterable[EngineAdapter]] = None,
                 backup_service: Optional[BackupService] = None,
                 settings: Optional[ServiceSettings] = None,
                 bus: Optional[ChangeBus] = None):
        self.settings = settings or ServiceSettings()
        if adapters is None:
            adapters = default_adapters(self.settings.config_paths, self.settings.project_dir)

        self.adapters: Dict[str, EngineAdapter] = {}
        for adapter in adapters:
            if adapter.engine_id in self.adapters:
                raise ValueError(f"Duplicate engine id: {adapter.engine_id}")
            self.adapters[adapter.engine_id] = adapter

        self.backup_service = backup_service or BackupService(self.settings.backup_dir)
        self.bus = bus or ChangeBus()
        self.state: Dict[str, EngineState] = {}

        self._lock = threading.RLock()
        # Guards the hand-off below, never held while subscribers run
        self._publish_lock = threading.Lock()
        self._state_version = 0
        self._queued_version = 0
        self._queued_state: Optional[Dict[str, Dict[str, Any]]] = None
        self._delivering = False
        self._observer: Optional[Observer] = None
        self._watcher: Optional[ConfigWatcher] = None
        self._watched_dirs: Set[str] = set()
        # engine id -> file signatures as of the last read or write we did
        self._signatures: Dict[str, Dict[str, Optional[Tuple[int, int]]]] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()

    # -- lifecycle ---------------------------------------------------------

    def initialize(self, watch: bool = True) -> None:
        """Load every engine, start watching their files, then publish the first state."""
        with self._lock:
            self._reload_all()
            if watch:
                self.start_watching()
            pending = self._snapshot()
        self._publish(pending)

    def refresh_state(self, emit: bool = True) -> None:
        """Detect and read every engine from disk."""
        with self._lock:
            self._reload_all()
            pending = self._snapshot() if emit else None
        self._publish(pending)

    def cleanup(self) -> None:
        """Stop watching and expire old backups. Safe to call repeatedly."""
        with self._lock:
            self.stop_watching()
            try:
                self.backup_service.cleanup_old_backups(timedelta(days=self.settings.backup_retention_days))
            except Exception as e:
                logger.warning(f"Backup cleanup failed: {e}")

    # -- reads -------------------------------------------------------------

    def get_state(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every engine: its config fields plus a ``_meta`` block."""
        with self._lock:
            snapshot = {}
            for engine_id, state in self.state.items():
                entry = copy.deepcopy(state.data)
                entry.update(copy.deepcopy(state.signals))
                entry['_meta'] = {
                    'engine': engine_id,
                    'name': state.name,
                    'configPath': str(state.config_path),
                    'lastModified': isoformat_utc(state.last_modified),
                    'detected': state.detected,
                }
                snapshot[engine_id] = entry
            return snapshot

    def list_backups(self, engine_id: Optional[str] = None) -> List[BackupRecord]:
        return self.backup_service.list_backups(engine_id)

    def check_update(self) -> Dict[str, Any]:
        if self.settings.no_update_check:
            return {'latest': __version__, 'current': __version__, 'url': '', 'hasUpdate': False}
        return check_update(__version__)

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], bool]:
        return self.bus.subscribe(callback, STATE_CHANGED)

    def unsubscribe(self, callback: Callable[[Dict[str, Any]], None]) -> bool:
        return self.bus.unsubscribe(callback, STATE_CHANGED)

    # -- writes ------------------------------------------------------------

    def patch(self, patch_obj: Dict[str, Any]) -> PatchResult:
        """Deep-merge a patch keyed by engine id into each engine's configuration.

        Engines are handled independently: one engine failing validation or
        its write does not stop the others from being applied. The new state
        is broadcast only when every engine in the patch succeeded.
        """
        if not isinstance(patch_obj, dict):
            return PatchResult(False, ["Patch must be an object keyed by engine id"], [])

        errors: List[str] = []
        warnings: List[str] = []

        with self._lock:
            for engine_id, engine_patch in patch_obj.items():
                if engine_id.startswith(RESERVED_PREFIX):
                    continue

                adapter = self.adapters.get(engine_id)
                current = self.state.get(engine_id)
                if adapter is None:
                    errors.append(f'Engine "{engine_id}" is not supported. '
                                  f'Available engines: {", ".join(self.adapters)}')
                    continue
                if current is None:
                    errors.append(f'Engine "{engine_id}" configuration not found. '
                                  f'Ensure the configuration file exists.')
                    continue
                if not isinstance(engine_patch, dict):
                    errors.append(f"{adapter.name}: patch must be an object, "
                                  f"got {type(engine_patch).__name__}")
                    continue

                if not current.detected:
                    warnings.append(f'Configuration file for "{engine_id}" was not detected. '
                                    f'Changes may not persist.')

                engine_patch = {key: value for key, value in engine_patch.items()
                                if not key.startswith(RESERVED_PREFIX)}
                new_data = deep_merge(current.data, copy.deepcopy(engine_patch), adapter.replace_keys)

                validation = adapter.validate(new_data)
                if not validation.valid:
                    errors.extend(f"{adapter.name}: {error}" for error in validation.errors)
                    logger.info(f"Rejected patch for {engine_id}: {len(validation.errors)} validation error(s)")
                    continue

                try:
                    self.backup_service.create_backup(engine_id, adapter.get_config_path(), current.data,
                                                      files=adapter.snapshot_files())
                except Exception as e:
                    logger.warning(f"Failed to create backup for {engine_id}: {e}")
                    warnings.append(f"Failed to create backup for {adapter.name}: {e}")

                try:
                    adapter.write(new_data)
                except Exception as e:
                    logger.error(f"Failed to write config for {engine_id}: {e}")
                    errors.append(describe_write_error(adapter, e))
                    continue

                current.data = new_data
                current.last_modified = datetime.now(timezone.utc)
                current.config_path = adapter.get_config_path()
                current.detected = adapter.detect()
                self._remember_signatures(engine_id, adapter)
                self._ensure_watched(adapter)
                logger.info(f"Applied patch to {engine_id}")

            pending = self._snapshot() if not errors else None
        self._publish(pending)

        return PatchResult(success=not errors, errors=errors, warnings=warnings)

    def handle_file_change(self, engine_id: str) -> bool:
        """Re-read one engine after an external edit. Returns True if state changed."""
        with self._lock:
            adapter = self.adapters.get(engine_id)
            current = self.state.get(engine_id)
            if adapter is None or current is None:
                return False

            signatures = self._current_signatures(adapter)
            if signatures == self._signatures.get(engine_id):
                logger.debug(f"Ignoring change in {engine_id} config that matches our last read or write")
                return False

            try:
                detected = adapter.detect()
                raw = adapter.read() if detected else {}
            except Exception as e:
                # Keep the last known good state; a later event may succeed
                logger.error(f"Failed to handle file change for {engine_id}: {e}")
                return False

            current.data, current.signals = split_reserved(raw)
            current.detected = detected
            current.config_path = adapter.get_config_path()
            current.last_modified = adapter.last_modified() or datetime.now(timezone.utc)
            self._signatures[engine_id] = signatures
            logger.info(f"Reloaded {engine_id} config after external change")
            pending = self._snapshot()
        self._publish(pending)
        return True

    def restore_backup(self, backup_path) -> bool:
        """Restore a backup, then reload every engine."""
        with self._lock:
            if not self.backup_service.restore_backup(backup_path):
                return False
            self._reload_all()
            pending = self._snapshot()
        self._publish(pending)
        return True

    # -- watching ----------------------------------------------------------

    def start_watching(self) -> None:
        with self._lock:
            if self._observer is not None:
                return
            self._watcher = ConfigWatcher(self.handle_file_change, self.settings.debounce_delay)
            for engine_id, adapter in self.adapters.items():
                for path in adapter.watch_paths():
                    self._watcher.watch(engine_id, path)

            self._observer = Observer()
            for directory in sorted(self._watcher.directories()):
                self._schedule_directory(directory)
            self._observer.start()
            logger.info(f"Watching {len(self._watched_dirs)} directories for config changes")

    def stop_watching(self) -> None:
        with self._lock:
            if self._watcher is not None:
                self._watcher.cancel_pending()
                self._watcher = None
            observer, self._observer = self._observer, None
            self._watched_dirs.clear()
            if observer is None:
                return
            try:
                observer.stop()
                observer.join(timeout=5)
            except Exception as e:
                logger.warning(f"Failed to stop file watcher: {e}")

    def _schedule_directory(self, directory: str) -> None:
        if directory in self._watched_dirs:
            return
        if not os.path.isdir(directory):
            logger.debug(f"Not watching missing directory {directory}")
            return
        try:
            self._observer.schedule(self._watcher, directory, recursive=False)
        except OSError as e:
            logger.warning(f"Cannot watch {directory}: {e}")
            return
        self._watched_dirs.add(directory)

    def _ensure_watched(self, adapter: EngineAdapter) -> None:
        # A write may have created a directory that did not exist at startup
        if self._observer is None:
            return
        for path in adapter.watch_paths():
            self._schedule_directory(os.path.dirname(_normalize(path)))

    # -- internals ---------------------------------------------------------

    def _reload_all(self) -> None:
        for engine_id, adapter in self.adapters.items():
            self.state[engine_id] = self._load_engine(adapter)
        detected = sum(1 for s in self.state.values() if s.detected)
        logger.info(f"Loaded {len(self.state)} engines ({detected} detected)")

    def _load_engine(self, adapter: EngineAdapter) -> EngineState:
        state = EngineState(id=adapter.engine_id, name=adapter.name, config_path=adapter.get_config_path())
        signatures = self._current_signatures(adapter)
        try:
            if adapter.detect():
                state.data, state.signals = split_reserved(adapter.read())
                state.detected = True
                state.last_modified = adapter.last_modified() or EPOCH
        except Exception as e:
            logger.error(f"Failed to read config for {adapter.engine_id}: {e}")
            return EngineState(id=adapter.engine_id, name=adapter.name, config_path=adapter.get_config_path())
        self._signatures[adapter.engine_id] = signatures
        return state

    def _current_signatures(self, adapter: EngineAdapter) -> Dict[str, Optional[Tuple[int, int]]]:
        return {str(path): _file_signature(path) for path in adapter.watch_paths()}

    def _remember_signatures(self, engine_id: str, adapter: EngineAdapter) -> None:
        self._signatures[engine_id] = self._current_signatures(adapter)

    def _snapshot(self) -> Tuple[int, Dict[str, Dict[str, Any]]]:
        # Must be called with _lock held
        self._state_version += 1
        return self._state_version, self.get_state()

    def _publish(self, pending: Optional[Tuple[int, Dict[str, Dict[str, Any]]]]) -> None:
        """Deliver a snapshot taken by _snapshot(). Call without holding _lock."""
        if pending is None:
            return
        version, snapshot = pending
        with self._publish_lock:
            if version <= self._queued_version:
                logger.debug(f"Skipping state version {version}, a newer one is already queued")
                return
            self._queued_version = version
            self._queued_state = snapshot
            if self._delivering:
                return
            self._delivering = True

        try:
            while True:
                with self._publish_lock:
                    snapshot = self._queued_state
                    self._queued_state = None
                    if snapshot is None:
                        self._delivering = False
                        return
                self.bus.publish(snapshot, STATE_CHANGED)
        except BaseException:
            with self._publish_lock:
                self._delivering = False
            raise


# -- command line ------------------------------------------------------------

def print_status(console: Console, state: Dict[str, Dict[str, Any]]) -> None:
    table = Table(title="Engine Configuration", box=box.ROUNDED, title_style="bold magenta")
    table.add_column("Engine", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Detected")
    table.add_column("Fields", justify="right", style="yellow")
    table.add_column("Last Modified", style="green")
    table.add_column("Path", style="dim")

    for engine_id, entry in state.items():
        meta = entry['_meta']
        fields = sum(1 for key in entry if not key.startswith(RESERVED_PREFIX))
        table.add_row(
            engine_id,
            meta['name'],
            "[green]✓[/green]" if meta['detected'] else "[red]✗[/red]",
            str(fields),
            meta['lastModified'] if meta['detected'] else "—",
            meta['configPath'],
        )
    console.print(table)


def print_patch_result(console: Console, result: PatchResult) -> None:
    if result.success:
        console.print("[bold green]✓ Patch applied[/bold green]")
    else:
        console.print("[bold red]✗ Patch failed[/bold red]")
    for error in result.errors:
        console.print(f"  [red]error:[/red] {escape(error)}")
    for warning in result.warnings:
        console.print(f"  [yellow]warning:[/yellow] {escape(warning)}")


def print_backups(console: Console, backups: List[BackupRecord]) -> None:
    if not backups:
        console.print("[dim]No backups found.[/dim]")
        return
    table = Table(title="Backups (newest first)", box=box.ROUNDED, title_style="bold magenta")
    table.add_column("Timestamp", style="green", no_wrap=True)
    table.add_column("Engine", style="cyan")
    table.add_column("Original File", style="white")
    table.add_column("Backup", style="dim")
    for record in backups:
        table.add_row(isoformat_utc(record.timestamp), record.engine, record.original_path, str(record.path))
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sfconfig',
        description="Manage local configuration files for AI coding-assistant CLIs")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--backup-dir', type=Path, help="Directory for configuration backups")
    parser.add_argument('--project-dir', type=Path, help="Project directory for project-level settings")
    parser.add_argument('--no-update-check', action='store_true', help="Disable the update check")
    parser.add_argument('--debounce', type=float, help="File watcher debounce delay in seconds")
    parser.add_argument('--verbose', '-v', action='store_true', help="Enable debug logging")

    commands = parser.add_subparsers(dest='command')
    commands.add_parser('status', help="Show every engine and whether its config was found")
    show = commands.add_parser('show', help="Print one engine's configuration as JSON")
    show.add_argument('engine')
    patch = commands.add_parser('patch', help="Apply a JSON patch keyed by engine id")
    patch.add_argument('patch_json', nargs='?', help="Patch document, e.g. '{\"codex\": {\"model\": \"o3\"}}'")
    patch.add_argument('--file', type=Path, help="Read the patch from a file instead")
    backups = commands.add_parser('backups', help="List configuration backups")
    backups.add_argument('--engine', help="Only show backups for this engine")
    restore = commands.add_parser('restore', help="Restore a configuration backup")
    restore.add_argument('path', type=Path)
    watch = commands.add_parser('watch', help="Watch config files and log changes until interrupted")
    watch.add_argument('--timeout', type=float, help="Stop watching after this many seconds")
    stream = commands.add_parser('stream', help="Write state changes to stdout as server-sent-event frames")
    stream.add_argument('--timeout', type=float, help="Stop streaming after this many seconds")
    stream.add_argument('--keepalive', type=float, default=DEFAULT_KEEPALIVE_INTERVAL,
                        help="Seconds between keepalive pings while idle")
    cleanup = commands.add_parser('cleanup', help="Delete old backups")
    cleanup.add_argument('--max-age-days', type=float, help="Maximum backup age (default: retention setting)")
    commands.add_parser('update-check', help="Check PyPI for a newer release")
    commands.add_parser('tui', help="Launch the terminal dashboard")
    return parser


def settings_from_args(args: argparse.Namespace) -> ServiceSettings:
    settings = ServiceSettings.from_env()
    if args.backup_dir is not None:
        settings.backup_dir = args.backup_dir
    if args.project_dir is not None:
        settings.project_dir = args.project_dir
    if args.debounce is not None:
        settings.debounce_delay = args.debounce
    if args.no_update_check:
        settings.no_update_check = True
    return settings


def _load_patch(args: argparse.Namespace) -> Dict[str, Any]:
    if args.file is not None:
        text = args.file.read_text(encoding='utf-8')
    elif args.patch_json is not None:
        text = args.patch_json
    else:
        raise ValueError("Provide a patch as an argument or with --file")
    return json.loads(text)


def _run_watch(synchronizer: ConfigSynchronizer, timeout: Optional[float]) -> int:
    stop = threading.Event()

    def log_state(state):
        detected = sum(1 for entry in state.values() if entry['_meta']['detected'])
        logger.info(f"State changed: {detected}/{len(state)} engines detected")

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    synchronizer.subscribe(log_state)
    synchronizer.initialize(watch=True)
    previous_handler = signal.signal(signal.SIGTERM, signal_handler)
    logger.info("Watching for configuration changes. Press Ctrl+C to stop.")
    try:
        stop.wait(timeout)
    except KeyboardInterrupt:
        logger.info("Watch interrupted by user")
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    return 0


def _run_stream(synchronizer: ConfigSynchronizer, timeout: Optional[float], keepalive: float) -> int:
    stream = StateStream(synchronizer.bus, keepalive_interval=keepalive)
    synchronizer.initialize(watch=True)
    client = stream.connect(synchronizer.get_state())
    try:
        for frame in client.frames(timeout=timeout):
            sys.stdout.write(frame)
            sys.stdout.flush()
    except KeyboardInterrupt:
        logger.info("Stream interrupted by user")
    finally:
        stream.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``sfconfig`` command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        logger.error(str(e))
        return 1

    console = Console()
    command = args.command or 'status'
    synchronizer = ConfigSynchronizer(settings=settings)

    if command == 'tui':
        from sfconfig_ui import run_dashboard
        run_dashboard(synchronizer)
        return 0

    with synchronizer:
        if command == 'watch':
            return _run_watch(synchronizer, args.timeout)

        if command == 'stream':
            return _run_stream(synchronizer, args.timeout, args.keepalive)

        if command == 'cleanup':
            days = args.max_age_days if args.max_age_days is not None else settings.backup_retention_days
            removed = synchronizer.backup_service.cleanup_old_backups(timedelta(days=days))
            console.print(f"Removed {removed} backup(s) older than {days:g} days")
            return 0

        if command == 'backups':
            print_backups(console, synchronizer.list_backups(args.engine))
            return 0

        if command == 'update-check':
            update = synchronizer.check_update()
            if update['hasUpdate']:
                console.print(f"[yellow]Update available:[/yellow] {update['current']} → "
                              f"{update['latest']} ({update['url']})")
            else:
                console.print(f"sfconfig {update['current']} is up to date")
            return 0

        if command == 'restore':
            synchronizer.initialize(watch=False)
            if synchronizer.restore_backup(args.path):
                console.print(f"[green]✓ Restored {args.path}[/green]")
                return 0
            console.print(f"[red]✗ Could not restore {args.path}[/red]")
            return 1

        synchronizer.initialize(watch=False)

        if command == 'show':
            state = synchronizer.get_state()
            if args.engine not in state:
                console.print(f"[red]Unknown engine {escape(repr(args.engine))}.[/red] Available: {', '.join(state)}")
                return 1
            console.print_json(json.dumps(state[args.engine], ensure_ascii=False))
            return 0

        if command == 'patch':
            try:
                patch_obj = _load_patch(args)
            except (OSError, ValueError) as e:
                console.print(f"[red]Invalid patch:[/red] {escape(str(e))}")
                return 1
            result = synchronizer.patch(patch_obj)
            print_patch_result(console, result)
            return 0 if result.success else 1

        print_status(console, synchronizer.get_state())
        return 0


if __name__ == "__main__":
    sys.exit(main())
