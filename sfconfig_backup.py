"""
Timestamped snapshots of engine configuration, taken before every write.

One JSON file per backup, named ``{engine}-{timestamp}.json`` with the
timestamp's colons and dots replaced by dashes. Backups are append-only: a
name collision gets a numeric suffix, an existing file is never replaced.
Each backup keeps the raw text of every file backing the engine (all layers
for layered engines), so a restore puts each file back byte for byte.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sfconfig_adapters import isoformat_utc
from sfconfig_settings import DEFAULT_BACKUP_DIRNAME, DEFAULT_RETENTION_DAYS

logger = logging.getLogger(__name__)

_SEQUENCE_RE = re.compile(r'Z-(\d+)\.json$')


@dataclass
class BackupRecord:
    """A single backup file and the snapshot it holds."""
    path: Path
    engine: str
    timestamp: datetime
    original_path: str
    data: Any
    # Raw content of each backing file, None for files that did not exist
    files: List[Dict[str, Optional[str]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': str(self.path),
            'timestamp': isoformat_utc(self.timestamp),
            'engine': self.engine,
            'originalPath': self.original_path,
        }


def _parse_timestamp(value: str) -> datetime:
    moment = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _restore_file(path: Path, content: Optional[str]) -> None:
    if content is None:
        # The file did not exist when the backup was taken
        if path.exists():
            path.unlink()
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')


def _sequence(path: Path) -> int:
    match = _SEQUENCE_RE.search(path.name)
    return int(match.group(1)) if match else 0


class BackupService:
    """Creates, lists, restores and expires configuration backups."""

    def __init__(self, backup_dir: Optional[Path] = None):
        self.backup_dir = Path(backup_dir) if backup_dir is not None else Path.cwd() / DEFAULT_BACKUP_DIRNAME

    def create_backup(self, engine_id: str, original_path, data: Any,
                      files: Optional[Iterable[Tuple[Any, Optional[str]]]] = None) -> Path:
        """Write a new backup and return its path. Raises on failure.

        ``data`` is the engine's configuration as seen by sfconfig. ``files``
        optionally holds ``(path, raw content)`` for every file backing the
        engine; when present, restoring rewrites those files exactly instead
        of serializing ``data`` to ``original_path``.
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = isoformat_utc(datetime.now(timezone.utc))
        stem = f"{engine_id}-{timestamp.replace(':', '-').replace('.', '-')}"
        payload = {
            'engine': engine_id,
            'originalPath': str(original_path),
            'timestamp': timestamp,
            'data': data,
        }
        if files is not None:
            payload['files'] = [{'path': str(path), 'content': text} for path, text in files]
        content = json.dumps(payload, indent=2, ensure_ascii=False)

        sequence = 0
        while True:
            name = f"{stem}-{sequence}.json" if sequence else f"{stem}.json"
            backup_path = self.backup_dir / name
            try:
                with open(backup_path, 'x', encoding='utf-8') as f:
                    f.write(content)
            except FileExistsError:
                sequence += 1
                continue
            logger.info(f"Created backup for {engine_id}: {backup_path}")
            return backup_path

    def list_backups(self, engine_id: Optional[str] = None) -> List[BackupRecord]:
        """All readable backups, optionally for one engine, newest first."""
        try:
            files = sorted(p for p in self.backup_dir.iterdir() if p.suffix == '.json')
        except FileNotFoundError:
            return []

        records = []
        for backup_path in files:
            try:
                payload = json.loads(backup_path.read_text(encoding='utf-8'))
                record = BackupRecord(
                    path=backup_path,
                    engine=payload['engine'],
                    timestamp=_parse_timestamp(payload['timestamp']),
                    original_path=payload['originalPath'],
                    data=payload['data'],
                    files=list(payload.get('files') or []),
                )
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Failed to read backup file {backup_path.name}: {e}")
                continue
            if engine_id is None or record.engine == engine_id:
                records.append(record)

        records.sort(key=lambda r: (r.timestamp, _sequence(r.path)), reverse=True)
        return records

    def restore_backup(self, backup_path) -> bool:
        """Put the engine's files back the way they were when the backup was taken."""
        try:
            payload = json.loads(Path(backup_path).read_text(encoding='utf-8'))
            original_path = Path(payload['originalPath'])
            files = payload.get('files')
            if files is None:
                files = [{'path': str(original_path),
                          'content': json.dumps(payload['data'], indent=2, ensure_ascii=False)}]
            for entry in files:
                _restore_file(Path(entry['path']), entry['content'])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to restore backup {backup_path}: {e}")
            return False

        logger.info(f"Restored {len(files)} file(s) from backup {backup_path}")
        return True

    def cleanup_old_backups(self, max_age: timedelta = timedelta(days=DEFAULT_RETENTION_DAYS)) -> int:
        """Delete backups older than max_age. Returns how many were removed."""
        cutoff = datetime.now(timezone.utc) - max_age
        removed = 0
        for record in self.list_backups():
            if record.timestamp >= cutoff:
                continue
            try:
                record.path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to delete old backup {record.path}: {e}")

        if removed:
            logger.info(f"Removed {removed} backup(s) older than {max_age}")
        return removed
