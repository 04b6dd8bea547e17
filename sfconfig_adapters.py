"""
Engine adapters for sfconfig.

Each supported AI coding-assistant CLI ("engine") gets one adapter that knows
how to detect, read, validate and write that engine's JSON configuration.
Schemas are permissive: unknown fields pass through, validation only catches
type mistakes in the fields we know about.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

RESERVED_PREFIX = '_'

_STRING_LIST = {'type': 'array', 'items': {'type': 'string'}}

_MCP_SERVERS_SCHEMA = {
    'type': 'object',
    'additionalProperties': {
        'type': 'object',
        'properties': {
            'command': {'type': 'string'},
            'args': _STRING_LIST,
            'env': {'type': 'object', 'additionalProperties': {'type': 'string'}},
            'type': {'type': 'string'},
            'url': {'type': 'string'},
        },
        'additionalProperties': True,
    },
}


class ConfigError(Exception):
    """Base class for adapter failures."""


class ConfigReadError(ConfigError):
    """Reading an engine's configuration failed for a reason other than "missing"."""

    summary = "Failed to read"

    def __init__(self, engine: str, path: Path, cause: Any):
        self.engine = engine
        self.path = path
        self.cause = cause
        super().__init__(f"{self.summary} {engine} config at {path}: {cause}")


class ConfigParseError(ConfigReadError):
    """The configuration file exists but is not a JSON object."""

    summary = "Invalid JSON in"


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def isoformat_utc(moment: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with millisecond precision."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).isoformat(timespec='milliseconds')
    return text.replace('+00:00', 'Z')


def resolve_path(raw: str, base_dir: Optional[Path] = None) -> Path:
    """Expand a leading home placeholder and anchor relative paths at base_dir."""
    if raw == '~':
        return Path.home()
    if raw.startswith('~/'):
        return Path.home() / raw[2:]
    path = Path(raw)
    if path.is_absolute():
        return path
    return (base_dir or Path.cwd()) / path


def strip_reserved(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop top-level keys that belong to sfconfig rather than the engine."""
    return {key: value for key, value in data.items() if not key.startswith(RESERVED_PREFIX)}


def _error_path(error) -> str:
    if not error.absolute_path:
        return '(root)'
    return '/' + '/'.join(str(part) for part in error.absolute_path)


class EngineAdapter(ABC):
    """Abstract base class for one engine's configuration file."""

    engine_id: str = ''
    name: str = ''
    config_path: str = ''
    schema: Dict[str, Any] = {'type': 'object', 'additionalProperties': True}
    # Object-valued fields that a patch replaces wholesale instead of merging into
    replace_keys: FrozenSet[str] = frozenset()

    def __init__(self, config_path: Optional[str] = None):
        if config_path is not None:
            self.config_path = config_path
        self._validator: Optional[Draft7Validator] = None

    @abstractmethod
    def parse_config(self, content: str, path: Path) -> Dict[str, Any]:
        """Parse raw file content into a configuration mapping."""
        pass

    @abstractmethod
    def serialize_config(self, data: Dict[str, Any]) -> str:
        """Serialize a configuration mapping into file content."""
        pass

    def get_config_path(self) -> Path:
        """Resolve the config path now, so HOME changes are picked up."""
        return resolve_path(self.config_path)

    def watch_paths(self) -> List[Path]:
        """Files whose modification means this engine's configuration changed."""
        return [self.get_config_path()]

    def detect(self) -> bool:
        try:
            return self.get_config_path().exists()
        except OSError as e:
            logger.debug(f"Could not check {self.name} config: {e}")
            return False

    def read(self) -> Dict[str, Any]:
        """Read the configuration; a missing file reads as an empty config."""
        path = self.get_config_path()
        content = self._read_text(path)
        if content is None:
            return {}
        return self.parse_config(content, path)

    def validate(self, data: Dict[str, Any]) -> ValidationResult:
        if self._validator is None:
            self._validator = Draft7Validator(self.schema)
        errors = sorted(f"{_error_path(error)}: {error.message}"
                        for error in self._validator.iter_errors(data))
        return ValidationResult(valid=not errors, errors=errors)

    def write(self, data: Dict[str, Any]) -> None:
        self._write_file(self.get_config_path(), strip_reserved(data))

    def snapshot_files(self) -> List[Tuple[Path, Optional[str]]]:
        """Raw content of every file backing this engine, None where a file does not exist."""
        return [(path, self._read_text(path)) for path in self.watch_paths()]

    def last_modified(self) -> Optional[datetime]:
        """Newest modification time across the watched files, if any exist."""
        newest = None
        for path in self.watch_paths():
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if newest is None or mtime > newest:
                newest = mtime
        if newest is None:
            return None
        return datetime.fromtimestamp(newest, tz=timezone.utc)

    def _read_text(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigReadError(self.name, path, e) from e

    def _write_file(self, path: Path, data: Dict[str, Any]) -> None:
        content = self.serialize_config(data)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')

    def __repr__(self):
        return f"{type(self).__name__}({self.engine_id!r}, {self.config_path!r})"


class JSONConfigAdapter(EngineAdapter):
    """Adapter for engines that store a single JSON object on disk."""

    def parse_config(self, content: str, path: Path) -> Dict[str, Any]:
        if not content.strip():
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigParseError(self.name, path, e) from e
        if not isinstance(data, dict):
            raise ConfigParseError(self.name, path, "top-level value must be a JSON object")
        return data

    def serialize_config(self, data: Dict[str, Any]) -> str:
        return json.dumps(data, indent=2, ensure_ascii=False)


class ClaudeCodeAdapter(JSONConfigAdapter):
    """Claude Code's main state file, including per-project settings."""

    engine_id = 'claude-code'
    name = 'Claude Code CLI'
    config_path = '~/.claude.json'
    replace_keys = frozenset({'mcpServers'})

    schema = {
        'type': 'object',
        'additionalProperties': True,
        'properties': {
            'api_key': {'type': 'string'},
            'model': {'type': 'string'},
            'max_project_files': {'type': 'number'},
            'verbose': {'type': 'boolean'},
            'bypassPermissionsModeAccepted': {'type': 'boolean'},
            'hasCompletedOnboarding': {'type': 'boolean'},
            'lastOnboardingVersion': {'type': 'string'},
            'firstStartTime': {'type': 'string'},
            'numStartups': {'type': 'number'},
            'installMethod': {'type': 'string'},
            'tipsHistory': {'type': 'object', 'additionalProperties': {'type': 'number'}},
            'lastReleaseNotesSeen': {'type': 'string'},
            'hasAvailableSubscription': {'type': 'boolean'},
            'subscriptionNoticeCount': {'type': 'number'},
            'autoUpdates': {'type': 'boolean'},
            'cachedChangelog': {'type': 'string'},
            'changelogLastFetched': {'type': ['string', 'number']},
            'fallbackAvailableWarningThreshold': {'type': 'number'},
            'oauthAccount': {
                'type': 'object',
                'additionalProperties': True,
                'properties': {
                    'accountUuid': {'type': 'string'},
                    'emailAddress': {'type': 'string'},
                    'organizationUuid': {'type': 'string'},
                    'organizationRole': {'type': 'string'},
                    'workspaceRole': {'type': ['string', 'null']},
                    'organizationName': {'type': 'string'},
                },
            },
            'mcpServers': _MCP_SERVERS_SCHEMA,
            'projects': {
                'type': 'object',
                'additionalProperties': {
                    'type': 'object',
                    'additionalProperties': True,
                    'properties': {
                        'lastRun': {'type': 'string'},
                        'cost': {'type': 'number'},
                        'duration': {'type': 'number'},
                        'lastCost': {'type': 'number'},
                        'lastAPIDuration': {'type': 'number'},
                        'lastDuration': {'type': 'number'},
                        'lastLinesAdded': {'type': 'number'},
                        'lastLinesRemoved': {'type': 'number'},
                        'lastTotalInputTokens': {'type': 'number'},
                        'lastTotalOutputTokens': {'type': 'number'},
                        'lastSessionId': {'type': 'string'},
                        'allowedTools': _STRING_LIST,
                        'ignorePatterns': _STRING_LIST,
                        'mcpContextUris': _STRING_LIST,
                        'enabledMcpjsonServers': _STRING_LIST,
                        'disabledMcpjsonServers': _STRING_LIST,
                        'hasTrustDialogAccepted': {'type': 'boolean'},
                        'hasClaudeMdExternalIncludesApproved': {'type': 'boolean'},
                        'hasClaudeMdExternalIncludesWarningShown': {'type': 'boolean'},
                        'mcpServers': _MCP_SERVERS_SCHEMA,
                        'history': {'type': 'array'},
                        'projectOnboardingSeenCount': {'type': 'number'},
                    },
                },
            },
        },
    }


class ClaudeSettingsAdapter(JSONConfigAdapter):
    """Claude Code settings, layered across a global and two project-local files.

    Layers in increasing precedence: global, shared (checked into git), local
    (personal). Reading merges them top-level field by field; writing puts
    each field back into the layer that currently owns it.
    """

    engine_id = 'claude-settings'
    name = 'Claude Code Settings'
    config_path = '~/.claude/settings.json'

    LAYERS = (
        ('global', None, 'Global user settings (applies to all projects)'),
        ('shared', '.claude/settings.json', 'Project settings (shared with team, checked into git)'),
        ('local', '.claude/settings.local.json', 'Local project settings (personal, not checked into git)'),
    )

    schema = {
        'type': 'object',
        'additionalProperties': True,
        'properties': {
            'permissions': {
                'type': 'object',
                'additionalProperties': True,
                'properties': {
                    'allow': _STRING_LIST,
                    'deny': _STRING_LIST,
                    'ask': _STRING_LIST,
                    'allowedTools': _STRING_LIST,
                    'deniedTools': _STRING_LIST,
                    'additionalDirectories': _STRING_LIST,
                    'defaultMode': {'type': 'string'},
                },
            },
            'env': {'type': 'object', 'additionalProperties': {'type': 'string'}},
            'apiKeyHelper': {'type': 'string'},
            'cleanupPeriodDays': {'type': 'number', 'minimum': 1},
            'includeCoAuthoredBy': {'type': 'boolean'},
            'defaultModel': {'type': 'string'},
            'model': {'type': 'string'},
            'maxTokens': {'type': 'number', 'minimum': 1},
            'temperature': {'type': 'number', 'minimum': 0, 'maximum': 2},
            'timeout': {'type': 'number', 'minimum': 1000},
        },
    }

    def __init__(self, config_path: Optional[str] = None, project_dir: Optional[Path] = None):
        super().__init__(config_path)
        self.project_dir = project_dir

    def get_config_paths(self) -> List[Tuple[str, Path, str]]:
        """All layers as (kind, resolved path, description), lowest precedence first."""
        base_dir = Path(self.project_dir) if self.project_dir is not None else Path.cwd()
        layers = []
        for kind, raw, description in self.LAYERS:
            path = self.get_config_path() if raw is None else resolve_path(raw, base_dir)
            layers.append((kind, path, description))
        return layers

    def watch_paths(self) -> List[Path]:
        return [path for _, path, _ in self.get_config_paths()]

    def detect(self) -> bool:
        for path in self.watch_paths():
            try:
                if path.exists():
                    return True
            except OSError:
                continue
        return False

    def read(self) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for _, _, content in self._read_layers():
            if content is not None:
                merged.update(content)
        return merged

    def write(self, data: Dict[str, Any]) -> None:
        data = strip_reserved(data)
        layers = self._read_layers()
        global_path = layers[0][0]

        updated = {path: dict(content) for path, _, content in layers if content is not None}
        updated.setdefault(global_path, {})

        # Highest-precedence existing layer that defines the key owns it
        def owner(key):
            for path, _, content in reversed(layers):
                if content is not None and key in content:
                    return path
            return global_path

        for content in updated.values():
            for key in [k for k in content if k not in data]:
                del content[key]
        for key, value in data.items():
            updated[owner(key)][key] = value

        for path, _, original in layers:
            if path not in updated:
                continue
            if original is None or updated[path] != original:
                logger.debug(f"Writing {self.name} layer {path}")
                self._write_file(path, updated[path])

    def _read_layers(self) -> List[Tuple[Path, str, Optional[Dict[str, Any]]]]:
        layers = []
        for kind, path, _ in self.get_config_paths():
            text = self._read_text(path)
            layers.append((path, kind, None if text is None else self.parse_config(text, path)))
        return layers


class CodexAdapter(JSONConfigAdapter):
    engine_id = 'codex'
    name = 'OpenAI Codex CLI'
    config_path = '~/.codex/config.json'

    schema = {
        'type': 'object',
        'additionalProperties': True,
        'properties': {
            'model': {'type': 'string'},
            'provider': {'type': 'string'},
            'providers': {
                'type': 'object',
                'additionalProperties': {
                    'type': 'object',
                    'properties': {
                        'name': {'type': 'string'},
                        'baseURL': {'type': 'string'},
                        'envKey': {'type': 'string'},
                    },
                },
            },
            'disableResponseStorage': {'type': 'boolean'},
            'history': {
                'type': 'object',
                'properties': {
                    'maxSize': {'type': 'number'},
                    'saveHistory': {'type': 'boolean'},
                    'sensitivePatterns': _STRING_LIST,
                },
            },
            'flexMode': {'type': 'boolean'},
            'reasoningEffort': {'type': 'string', 'enum': ['Low', 'Medium', 'High']},
            'tools': {
                'type': 'object',
                'properties': {
                    'shell': {
                        'type': 'object',
                        'properties': {
                            'maxBytes': {'type': 'number'},
                            'maxLines': {'type': 'number'},
                        },
                    },
                },
            },
            'lastUpdateCheck': {'type': 'string'},
            'api_key': {'type': 'string'},
            'temperature': {'type': 'number'},
            'max_tokens': {'type': 'number'},
            'verbose': {'type': 'boolean'},
            'organization': {'type': 'string'},
            'proxy': {'type': 'string'},
            'projects': {
                'type': 'object',
                'additionalProperties': {
                    'type': 'object',
                    'properties': {
                        'lastRun': {'type': 'string'},
                        'cost': {'type': 'number'},
                        'duration': {'type': 'number'},
                        'model': {'type': 'string'},
                    },
                },
            },
        },
    }


class GeminiAdapter(JSONConfigAdapter):
    """Gemini CLI settings plus read-only signals from files next to them.

    The signals (OAuth credential metadata, user id, session summaries and the
    context file) are synthesized on every read under reserved ``_`` keys and
    are never written back.
    """

    engine_id = 'gemini'
    name = 'Gemini CLI'
    config_path = '~/.gemini/settings.json'
    replace_keys = frozenset({'mcpServers'})

    DEFAULT_CONTEXT_FILE = 'GEMINI.md'

    schema = {
        'type': 'object',
        'additionalProperties': True,
        'properties': {
            'theme': {'type': 'string', 'enum': ['Default', 'GitHub', 'Dark', 'Light']},
            'selectedAuthType': {'type': 'string', 'enum': ['oauth-personal', 'oauth-workspace', 'api-key']},
            'contextFileName': {'type': 'string'},
            'preferredEditor': {'type': 'string', 'enum': ['vscode', 'vim', 'nano', 'emacs', 'cursor']},
            'sandbox': {'type': ['boolean', 'string']},
            'autoAccept': {'type': 'boolean'},
            'coreTools': _STRING_LIST,
            'excludeTools': _STRING_LIST,
            'toolDiscoveryCommand': {'type': 'string'},
            'toolCallCommand': {'type': 'string'},
            'mcpServers': _MCP_SERVERS_SCHEMA,
            'checkpointing': {'type': 'boolean'},
            'telemetry': {
                'type': 'object',
                'properties': {
                    'enabled': {'type': 'boolean'},
                    'target': {'type': 'string', 'enum': ['local', 'remote', 'none']},
                },
            },
            'apiEndpoint': {'type': 'string'},
            'model': {'type': 'string'},
            'maxTokens': {'type': 'number'},
            'temperature': {'type': 'number'},
            'conversationHistory': {
                'type': 'object',
                'properties': {
                    'maxEntries': {'type': 'number'},
                    'saveToFile': {'type': 'boolean'},
                    'filePath': {'type': 'string'},
                },
            },
            'verbose': {'type': 'boolean'},
            'debug': {'type': 'boolean'},
        },
    }

    def read(self) -> Dict[str, Any]:
        data = super().read()
        gemini_dir = self.get_config_path().parent
        data['_oauth'] = self._read_oauth(gemini_dir / 'oauth_creds.json')
        data['_userId'] = self._read_user_id(gemini_dir / 'user_id')
        data['_sessions'] = self._read_sessions(gemini_dir / 'tmp')

        context_name = data.get('contextFileName')
        if not isinstance(context_name, str) or not context_name:
            context_name = self.DEFAULT_CONTEXT_FILE
        data['_contextFile'] = self._read_context_file(gemini_dir / context_name)
        return data

    def _read_oauth(self, path: Path) -> Dict[str, Any]:
        try:
            creds = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            return {'hasCredentials': False}
        if not isinstance(creds, dict):
            return {'hasCredentials': False}

        # Only presence and metadata, never the tokens themselves
        return {
            'hasCredentials': True,
            'tokenType': creds.get('token_type'),
            'scope': creds.get('scope'),
            'expiryDate': _millis_to_iso(creds.get('expiry_date')),
            'hasAccessToken': bool(creds.get('access_token')),
            'hasRefreshToken': bool(creds.get('refresh_token')),
            'hasIdToken': bool(creds.get('id_token')),
        }

    def _read_user_id(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding='utf-8').strip()
        except (OSError, UnicodeDecodeError):
            return None

    def _read_sessions(self, tmp_dir: Path) -> List[Dict[str, Any]]:
        try:
            session_dirs = sorted(p for p in tmp_dir.iterdir() if p.is_dir())
        except OSError:
            return []

        sessions = []
        for session_dir in session_dirs:
            try:
                logs = json.loads((session_dir / 'logs.json').read_text(encoding='utf-8'))
            except (OSError, ValueError):
                continue
            if not isinstance(logs, list):
                continue
            sessions.append({
                'sessionDir': session_dir.name,
                'messageCount': len(logs),
                'firstMessage': logs[0] if logs else None,
                'lastMessage': logs[-1] if logs else None,
            })
        return sessions

    def _read_context_file(self, path: Path) -> Dict[str, Any]:
        try:
            content = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError):
            return {'exists': False, 'path': str(path), 'content': '', 'size': 0}
        return {'exists': True, 'path': str(path), 'content': content, 'size': len(content)}


def _millis_to_iso(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return isoformat_utc(datetime.fromtimestamp(value / 1000, tz=timezone.utc))
    except (OverflowError, OSError, ValueError):
        return None


ADAPTER_CLASSES = (ClaudeCodeAdapter, ClaudeSettingsAdapter, CodexAdapter, GeminiAdapter)


def default_adapters(config_paths: Optional[Dict[str, str]] = None,
                     project_dir: Optional[Path] = None) -> List[EngineAdapter]:
    """Build one adapter per supported engine, applying any path overrides."""
    config_paths = config_paths or {}
    adapters: List[EngineAdapter] = []
    for adapter_cls in ADAPTER_CLASSES:
        override = config_paths.get(adapter_cls.engine_id)
        if adapter_cls is ClaudeSettingsAdapter:
            adapters.append(adapter_cls(override, project_dir=project_dir))
        else:
            adapters.append(adapter_cls(override))
    return adapters
