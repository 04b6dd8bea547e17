#!/usr/bin/env python3
"""
Terminal dashboard for sfconfig.

Shows every engine's configuration, lets the user edit it as raw JSON and
restore backups. All changes go through the ConfigSynchronizer, and the view
re-renders whenever the synchronizer broadcasts a new state.
"""

import json
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.logging import TextualHandler
from textual.message import Message
from textual.screen import ModalScreen
from textual.widgets import (
    Button, DataTable, Footer, Header, Label, ListItem, ListView, Static, TextArea,
)

from sfconfig_adapters import RESERVED_PREFIX, isoformat_utc
from sfconfig_backup import BackupRecord
from sfconfig_sync import ConfigSynchronizer

logger = logging.getLogger(__name__)


def config_fields(entry: Dict[str, Any]) -> Dict[str, Any]:
    """The editable part of a snapshot entry (everything but reserved keys)."""
    return {key: value for key, value in entry.items() if not key.startswith(RESERVED_PREFIX)}


def summarize_value(value: Any, width: int = 60) -> str:
    """One-line rendering of a config value for table cells."""
    if isinstance(value, dict):
        text = f"{{{len(value)} keys}}"
    elif isinstance(value, list):
        text = json.dumps(value, ensure_ascii=False)
        if len(text) > width:
            text = f"[{len(value)} items]"
    else:
        text = json.dumps(value, ensure_ascii=False)
    if len(text) > width:
        text = text[:width - 1] + "…"
    return text


def build_raw_patch(original: Dict[str, Any], edited: Dict[str, Any],
                    replace_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Patch that turns original into edited under deep-merge semantics.

    Changed nested mappings become nested patches, removed keys become None,
    and mappings under replace_keys are sent whole because the merge replaces
    them rather than merging into them.
    """
    replace_keys = frozenset(replace_keys)
    patch: Dict[str, Any] = {}
    for key, value in edited.items():
        old = original.get(key)
        if key in original and old == value:
            continue
        if isinstance(value, dict) and isinstance(old, dict) and value and key not in replace_keys:
            nested = build_raw_patch(old, value, replace_keys)
            if nested:
                patch[key] = nested
        else:
            patch[key] = value
    for key in original:
        if key not in edited:
            patch[key] = None
    return patch


class EngineStateChanged(Message):
    """A new state snapshot from the synchronizer, delivered on the UI thread."""

    def __init__(self, state: Dict[str, Dict[str, Any]]) -> None:
        super().__init__()
        self.state = state


class BackupScreen(ModalScreen):
    """Modal screen listing backups; dismisses with the path to restore, or None."""

    CSS = """
    BackupScreen {
        align: center middle;
    }

    .backup-container {
        background: $surface;
        border: thick $primary;
        width: 100;
        height: 30;
        padding: 1 2;
    }

    #backup_table {
        height: 1fr;
        margin: 1 0;
    }

    .backup-buttons {
        dock: bottom;
        height: 3;
        align: center middle;
    }
    """

    BINDINGS = [
        Binding("enter", "restore", "Restore"),
        Binding("escape", "cancel", "Close"),
    ]

    def __init__(self, backups: List[BackupRecord], engine_name: str):
        super().__init__()
        self.backups = backups
        self.engine_name = engine_name

    def compose(self) -> ComposeResult:
        with Container(classes="backup-container"):
            yield Label(f"Backups for {self.engine_name} (Enter to restore, Esc to close)")
            yield DataTable(id="backup_table", zebra_stripes=True, cursor_type="row")
            with Horizontal(classes="backup-buttons"):
                yield Button("Restore (Enter)", id="restore_btn", variant="warning")
                yield Button("Close (Esc)", id="close_btn")

    def on_mount(self) -> None:
        table = self.query_one("#backup_table", DataTable)
        table.add_column("Timestamp", key="timestamp")
        table.add_column("Original File", key="original")
        for record in self.backups:
            table.add_row(isoformat_utc(record.timestamp), record.original_path, key=str(record.path))
        table.focus()

    def action_restore(self) -> None:
        table = self.query_one("#backup_table", DataTable)
        if not self.backups:
            self.notify("No backups to restore", severity="warning")
            return
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        self.dismiss(row_key.value)

    def action_cancel(self) -> None:
        self.dismiss(None)

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "restore_btn":
            self.action_restore()
        elif event.button.id == "close_btn":
            self.dismiss(None)


class ConfigDashboardApp(App):
    """Main sfconfig dashboard."""

    CSS = """
    .sidebar {
        dock: left;
        width: 34;
        background: $surface;
        border-right: solid $primary;
    }

    .engine-list {
        height: 10;
        margin: 1 0;
        border: solid $accent;
    }

    .main-content {
        padding: 0 1;
    }

    #settings_table {
        height: 1fr;
        border: solid $accent;
    }

    #raw_editor {
        height: 1fr;
        border: solid $accent;
    }

    .status-bar {
        dock: bottom;
        height: 1;
        background: $surface;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("b", "backups", "Backups"),
        Binding("ctrl+s", "save", "Save JSON"),
        Binding("escape", "revert", "Revert"),
    ]

    def __init__(self, synchronizer: ConfigSynchronizer):
        super().__init__()
        self.synchronizer = synchronizer
        self.state: Dict[str, Dict[str, Any]] = {}
        self.current_engine: Optional[str] = next(iter(synchronizer.adapters), None)
        self._loaded_text = ""
        self._saving = False
        self._ui_thread: Optional[int] = None
        self._unsubscribe = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            with Vertical(classes="sidebar"):
                yield Label("Engines (↑↓ to select)")
                yield ListView(
                    *[ListItem(Label(adapter.name), name=engine_id)
                      for engine_id, adapter in self.synchronizer.adapters.items()],
                    id="engine_list",
                    classes="engine-list",
                )
                yield Static("", id="engine_meta")
            with Vertical(classes="main-content"):
                yield Label("Settings")
                yield DataTable(id="settings_table", zebra_stripes=True, cursor_type="row")
                yield Label("Raw JSON (Ctrl+S to save, Esc to revert)")
                yield TextArea("", id="raw_editor")
        with Container(classes="status-bar"):
            yield Static("Loading configurations...", id="status_text")
        yield Footer()

    def on_mount(self) -> None:
        self._ui_thread = threading.get_ident()
        self._unsubscribe = self.synchronizer.subscribe(self._on_state_changed)
        self.synchronizer.initialize(watch=True)
        self.query_one("#engine_list", ListView).focus()

    def on_unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self.synchronizer.cleanup()

    def _on_state_changed(self, state: Dict[str, Dict[str, Any]]) -> None:
        # File watcher notifications arrive on a background thread; posting
        # returns immediately so the watcher never waits on the UI
        if threading.get_ident() == self._ui_thread:
            self.apply_state(state)
        else:
            self.post_message(EngineStateChanged(state))

    def on_engine_state_changed(self, message: EngineStateChanged) -> None:
        self.apply_state(message.state)

    def apply_state(self, state: Dict[str, Dict[str, Any]]) -> None:
        self.state = state
        detected = sum(1 for entry in state.values() if entry['_meta']['detected'])
        self.update_status(f"Detected {detected} of {len(state)} configuration engines")
        self.render_engine()

    def render_engine(self, force_editor: bool = False) -> None:
        entry = self.state.get(self.current_engine)
        if entry is None:
            return
        meta = entry['_meta']

        self.query_one("#engine_meta", Static).update(
            f"{meta['name']}\n"
            f"{'Detected' if meta['detected'] else 'Not detected'}\n"
            f"{meta['configPath']}\n"
            f"Modified: {meta['lastModified'] if meta['detected'] else '—'}"
        )

        table = self.query_one("#settings_table", DataTable)
        table.clear(columns=True)
        table.add_column("Setting", key="setting")
        table.add_column("Value", key="value")
        for key, value in config_fields(entry).items():
            table.add_row(key, summarize_value(value), key=key)

        editor = self.query_one("#raw_editor", TextArea)
        new_text = json.dumps(config_fields(entry), indent=2, ensure_ascii=False)
        if force_editor or self._saving or editor.text == self._loaded_text:
            editor.load_text(new_text)
        elif new_text != self._loaded_text:
            self.notify("Configuration changed on disk; press Esc to discard your edits and reload",
                        severity="warning")
        self._loaded_text = new_text

    def update_status(self, message: str) -> None:
        self.query_one("#status_text", Static).update(message)

    def on_list_view_highlighted(self, event: ListView.Highlighted) -> None:
        if event.list_view.id == "engine_list" and event.item is not None:
            self._switch_engine(event.item.name)

    def on_list_view_selected(self, event: ListView.Selected) -> None:
        if event.list_view.id == "engine_list":
            self._switch_engine(event.item.name)

    def _switch_engine(self, engine_id: str) -> None:
        if engine_id == self.current_engine:
            return
        self.current_engine = engine_id
        self.render_engine(force_editor=True)

    def action_refresh(self) -> None:
        self.synchronizer.refresh_state(emit=True)
        self.notify("Configuration reloaded from disk")

    def action_revert(self) -> None:
        self.render_engine(force_editor=True)

    def action_save(self) -> None:
        engine_id = self.current_engine
        entry = self.state.get(engine_id)
        if entry is None:
            return

        text = self.query_one("#raw_editor", TextArea).text
        try:
            edited = json.loads(text)
        except json.JSONDecodeError as e:
            self.notify(f"Invalid JSON: {e}", severity="error")
            return
        if not isinstance(edited, dict):
            self.notify("Configuration must be a JSON object", severity="error")
            return

        adapter = self.synchronizer.adapters[engine_id]
        patch = build_raw_patch(config_fields(entry), config_fields(edited), adapter.replace_keys)
        if not patch:
            self.notify("No changes to save")
            return

        logger.debug(f"Saving {engine_id} from raw editor: {len(patch)} top-level change(s)")
        self._saving = True
        try:
            result = self.synchronizer.patch({engine_id: patch})
        finally:
            self._saving = False
        for warning in result.warnings:
            self.notify(warning, severity="warning")
        if result.success:
            self.render_engine(force_editor=True)
            self.notify(f"Saved {adapter.name} configuration")
        else:
            self.notify("\n".join(result.errors), severity="error", timeout=10)

    def action_backups(self) -> None:
        engine_id = self.current_engine
        if engine_id is None:
            return
        adapter = self.synchronizer.adapters[engine_id]

        def handle_result(backup_path: Optional[str]) -> None:
            if not backup_path:
                return
            if self.synchronizer.restore_backup(backup_path):
                self.render_engine(force_editor=True)
                self.notify(f"Restored backup {backup_path}")
            else:
                self.notify(f"Could not restore {backup_path}", severity="error")

        self.push_screen(BackupScreen(self.synchronizer.list_backups(engine_id), adapter.name), handle_result)


def run_dashboard(synchronizer: ConfigSynchronizer) -> None:
    """Run the dashboard, routing log output into textual's devtools console."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(TextualHandler())

    app = ConfigDashboardApp(synchronizer)
    app.run()


def main():
    """Main entry point for the sfconfig dashboard."""
    from sfconfig_settings import ServiceSettings
    run_dashboard(ConfigSynchronizer(settings=ServiceSettings.from_env()))


if __name__ == "__main__":
    main()
