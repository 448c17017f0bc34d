"""Configuration loader for server profiles and operator settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from jsonschema import Draft7Validator

from .errors import NotConfigured

logger = logging.getLogger(__name__)

_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["servers"],
    "properties": {
        "servers": {
            "type": "object",
            "propertyNames": {"pattern": "^[A-Za-z0-9-]+$"},
            "additionalProperties": {
                "type": "object",
                "required": ["label", "region", "plan", "snapshot_prefix"],
                "properties": {
                    "label": {"type": "string", "minLength": 1},
                    "region": {"type": "string", "minLength": 1},
                    "plan": {"type": "string", "minLength": 1},
                    "snapshot_prefix": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "allowed_scopes": {"type": "array", "items": {"type": ["string", "integer"]}},
                    "ssh_user": {"type": "string"},
                    "stop_command": {"type": "string"},
                    "start_command": {"type": "string"},
                    "downloadable_files": {
                        "type": "object",
                        "propertyNames": {"pattern": "^[A-Za-z0-9_-]+$"},
                        "additionalProperties": {
                            "type": "object",
                            "required": ["path"],
                            "properties": {
                                "path": {"type": "string", "minLength": 1},
                                "type": {"type": "string", "enum": ["file", "directory"]},
                                "description": {"type": "string"},
                            },
                        },
                    },
                },
            },
        },
        "settings": {
            "type": "object",
            "properties": {
                "snapshot_retention": {"type": "integer", "minimum": 1},
                "file_retention": {"type": "integer", "minimum": 1},
                "download_dir": {"type": "string"},
                "file_server_base_url": {"type": "string"},
                "file_server_port": {"type": "integer", "minimum": 1},
                "instance_poll_interval_sec": _POSITIVE_NUMBER,
                "instance_ready_timeout_sec": _POSITIVE_NUMBER,
                "snapshot_poll_interval_sec": _POSITIVE_NUMBER,
                "snapshot_ready_timeout_sec": _POSITIVE_NUMBER,
                "reminder_time": {"type": "string", "pattern": "^([01][0-9]|2[0-3]):[0-5][0-9]$|^$"},
            },
        },
    },
}

_validator = Draft7Validator(CONFIG_SCHEMA)


@dataclass(frozen=True)
class ArtifactSpec:
    path: str
    is_directory: bool = False
    description: str = ""


@dataclass(frozen=True)
class ServerProfile:
    name: str
    label: str
    region: str
    plan: str
    snapshot_prefix: str
    description: str = ""
    allowed_scopes: Tuple[str, ...] = ()
    ssh_user: Optional[str] = None
    stop_command: Optional[str] = None
    start_command: Optional[str] = None
    artifacts: Mapping[str, ArtifactSpec] = field(default_factory=dict)

    def allows(self, scope: Optional[str]) -> bool:
        """No restriction when allowed_scopes is empty; otherwise the scope must be listed."""
        if not self.allowed_scopes:
            return True
        return scope is not None and str(scope) in self.allowed_scopes

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ServerProfile":
        files = data.get("downloadable_files") or {}
        return cls(
            name=name,
            label=data["label"],
            region=data["region"],
            plan=data["plan"],
            snapshot_prefix=data["snapshot_prefix"],
            description=data.get("description", ""),
            allowed_scopes=tuple(str(s) for s in data.get("allowed_scopes") or ()),
            ssh_user=data.get("ssh_user") or None,
            stop_command=data.get("stop_command") or None,
            start_command=data.get("start_command") or None,
            artifacts={
                key: ArtifactSpec(
                    path=spec["path"],
                    is_directory=spec.get("type", "file") == "directory",
                    description=spec.get("description", key),
                )
                for key, spec in files.items()
            },
        )


@dataclass(frozen=True)
class Settings:
    snapshot_retention: int = 3
    file_retention: int = 5
    download_dir: Path = Path("downloads")
    file_server_base_url: str = ""
    file_server_port: int = 8080
    instance_poll_interval_sec: float = 5
    instance_ready_timeout_sec: float = 300
    snapshot_poll_interval_sec: float = 10
    snapshot_ready_timeout_sec: float = 600
    reminder_time: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return cls(
            snapshot_retention=int(data.get("snapshot_retention", 3)),
            file_retention=int(data.get("file_retention", 5)),
            download_dir=Path(data.get("download_dir", "downloads")),
            file_server_base_url=data.get("file_server_base_url", ""),
            file_server_port=int(data.get("file_server_port", 8080)),
            instance_poll_interval_sec=float(data.get("instance_poll_interval_sec", 5)),
            instance_ready_timeout_sec=float(data.get("instance_ready_timeout_sec", 300)),
            snapshot_poll_interval_sec=float(data.get("snapshot_poll_interval_sec", 10)),
            snapshot_ready_timeout_sec=float(data.get("snapshot_ready_timeout_sec", 600)),
            reminder_time=data.get("reminder_time", ""),
        )


class ServerRegistry:
    """Immutable view of the configured profiles, read once per request."""

    def __init__(self, profiles: Mapping[str, ServerProfile], settings: Settings = None) -> None:
        self._profiles = dict(profiles)
        self.settings = settings or Settings()

    def resolve(self, name: str, scope: Optional[str] = None) -> ServerProfile:
        profile = self._profiles.get(name)
        if profile is None or not profile.allows(scope):
            raise NotConfigured(f'Server "{name}" is not configured')
        return profile

    def names_for_scope(self, scope: Optional[str] = None) -> List[str]:
        return [name for name, profile in self._profiles.items() if profile.allows(scope)]

    def profiles(self) -> List[ServerProfile]:
        return list(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)


ENV_MAP = {
    "settings.snapshot_retention": "SNAPSHOT_RETENTION",
    "settings.file_retention": "FILE_RETENTION",
    "settings.download_dir": "FILE_DOWNLOAD_DIR",
    "settings.file_server_base_url": "FILE_SERVER_BASE_URL",
    "settings.file_server_port": "FILE_SERVER_PORT",
    "settings.instance_poll_interval_sec": "INSTANCE_POLL_INTERVAL_SEC",
    "settings.instance_ready_timeout_sec": "INSTANCE_READY_TIMEOUT_SEC",
    "settings.snapshot_poll_interval_sec": "SNAPSHOT_POLL_INTERVAL_SEC",
    "settings.snapshot_ready_timeout_sec": "SNAPSHOT_READY_TIMEOUT_SEC",
    "settings.reminder_time": "REMINDER_TIME",
}

_INT_KEYS = {"snapshot_retention", "file_retention", "file_server_port"}
_FLOAT_KEYS = {
    "instance_poll_interval_sec", "instance_ready_timeout_sec",
    "snapshot_poll_interval_sec", "snapshot_ready_timeout_sec",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in _INT_KEYS:
            value = int(value)
        elif last in _FLOAT_KEYS:
            value = float(value)
        target[last] = value

    return merged


def validate_config(data: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(
            f"{'.'.join(str(p) for p in error.path) or '<root>'}: {error.message}" for error in errors
        )
        raise ValueError(f"server config validation failed: {messages}")

    prefixes: Dict[str, str] = {}
    for name, server in data["servers"].items():
        prefix = server["snapshot_prefix"]
        if prefix in prefixes:
            raise ValueError(
                f"server config validation failed: snapshot_prefix {prefix!r} "
                f"shared by {prefixes[prefix]!r} and {name!r}"
            )
        prefixes[prefix] = name

    for prefix, name in prefixes.items():
        for other, other_name in prefixes.items():
            if other != prefix and other.startswith(prefix):
                logger.warning(
                    f"snapshot_prefix {prefix!r} ({name}) also matches snapshots of "
                    f"{other_name} ({other!r})"
                )


def build_registry(data: Dict[str, Any]) -> ServerRegistry:
    validate_config(data)
    profiles = {
        name: ServerProfile.from_dict(name, server)
        for name, server in data["servers"].items()
    }
    return ServerRegistry(profiles, Settings.from_dict(data.get("settings") or {}))


def load_servers(config_path: str | Path = "servers.yml") -> ServerRegistry:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data.setdefault("servers", {})
    data = merge_env_overrides(data)
    return build_registry(data)
