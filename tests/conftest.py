"""Shared fixtures for sfconfig tests."""

import json
from pathlib import Path

import pytest

from sfconfig_adapters import JSONConfigAdapter
from sfconfig_backup import BackupService
from sfconfig_settings import ServiceSettings
from sfconfig_sync import ConfigSynchronizer


class AlphaAdapter(JSONConfigAdapter):
    """Minimal engine used by the synchronizer tests."""

    engine_id = 'alpha'
    name = 'Alpha CLI'
    config_path = '~/.alpha/config.json'
    replace_keys = frozenset({'servers'})
    schema = {
        'type': 'object',
        'additionalProperties': True,
        'properties': {
            'name': {'type': 'string'},
            'tags': {'type': 'array', 'items': {'type': 'string'}},
        },
    }


class BetaAdapter(JSONConfigAdapter):
    engine_id = 'beta'
    name = 'Beta CLI'
    config_path = '~/.beta/settings.json'
    schema = {
        'type': 'object',
        'additionalProperties': True,
        'properties': {'count': {'type': 'number'}},
    }


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding='utf-8')
    return path


def read_json(path: Path):
    return json.loads(path.read_text(encoding='utf-8'))


@pytest.fixture
def fake_home(tmp_path, monkeypatch):
    """Point the home directory (and the working directory) into tmp_path."""
    home = tmp_path / "home"
    home.mkdir()
    project = tmp_path / "project"
    project.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setattr(Path, "home", staticmethod(lambda: home))
    monkeypatch.chdir(project)
    for name in ("SFCONFIG_BACKUP_DIR", "SFCONFIG_RETENTION_DAYS", "SFCONFIG_DEBOUNCE",
                 "SFCONFIG_NO_UPDATE_CHECK", "SFCONFIG_PROJECT_DIR"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def settings(backup_dir):
    return ServiceSettings(backup_dir=backup_dir, no_update_check=True, debounce_delay=0.05)


@pytest.fixture
def synchronizer(fake_home, settings, backup_dir):
    sync = ConfigSynchronizer(
        adapters=[AlphaAdapter(), BetaAdapter()],
        backup_service=BackupService(backup_dir),
        settings=settings,
    )
    yield sync
    sync.cleanup()


@pytest.fixture
def events(synchronizer):
    """Every state snapshot the synchronizer publishes."""
    received = []
    synchronizer.subscribe(received.append)
    return received
