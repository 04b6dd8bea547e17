"""
Settings for the sfconfig service itself.

These control where backups live, how long they are kept and how the file
watcher behaves. They are not the configuration of any managed engine.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

DEFAULT_BACKUP_DIRNAME = '.sfconfig-backups'
DEFAULT_RETENTION_DAYS = 30
DEFAULT_DEBOUNCE_DELAY = 0.1

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


@dataclass
class ServiceSettings:
    """Runtime settings for a ConfigSynchronizer."""
    backup_dir: Path = field(default_factory=lambda: Path.cwd() / DEFAULT_BACKUP_DIRNAME)
    backup_retention_days: float = DEFAULT_RETENTION_DAYS
    debounce_delay: float = DEFAULT_DEBOUNCE_DELAY
    no_update_check: bool = False
    project_dir: Optional[Path] = None
    # engine id -> config file path overriding the adapter default
    config_paths: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ServiceSettings':
        """Build settings from SFCONFIG_* environment variables."""
        env = os.environ if environ is None else environ
        settings = cls()

        if env.get('SFCONFIG_BACKUP_DIR'):
            settings.backup_dir = Path(env['SFCONFIG_BACKUP_DIR']).expanduser()
        if env.get('SFCONFIG_RETENTION_DAYS'):
            settings.backup_retention_days = _parse_float(
                'SFCONFIG_RETENTION_DAYS', env['SFCONFIG_RETENTION_DAYS'])
        if env.get('SFCONFIG_DEBOUNCE'):
            settings.debounce_delay = _parse_float('SFCONFIG_DEBOUNCE', env['SFCONFIG_DEBOUNCE'])
        if env.get('SFCONFIG_PROJECT_DIR'):
            settings.project_dir = Path(env['SFCONFIG_PROJECT_DIR']).expanduser()
        settings.no_update_check = env.get('SFCONFIG_NO_UPDATE_CHECK', '').strip().lower() in _TRUE_VALUES
        return settings


def _parse_float(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value
