"""Data-directory aware configuration loading for addonsync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

DEFAULT_PROTECTED_NAMES: List[str] = ["Cinemeta", "Local Files"]
DEFAULT_PROTECTED_IDS: List[str] = ["com.linvo.cinemeta", "org.stremio.local"]
DEFAULT_PROTECTED_URLS: List[str] = [
    "http://127.0.0.1:11470/local-addon/manifest.json",
    "https://v3-cinemeta.strem.io/manifest.json",
]
DEFAULT_LOCAL_URLS: List[str] = [
    "http://127.0.0.1:11470/local-addon/manifest.json",
]


CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "vault": {
        "type": dict,
        "schema": {
            "key_env": {"type": str, "default": "ADDONSYNC_ENCRYPTION_KEY"},
            "dek_ttl_hours": {"type": (int, float), "default": 8},
            "scrypt_n": {"type": int, "default": 1 << 14},
        },
        "default": {},
    },
    "remote": {
        "type": dict,
        "schema": {
            "endpoint": {"type": str, "default": "https://api.strem.io"},
            "timeout": {"type": (int, float), "default": 30},
        },
        "default": {},
    },
    "manifests": {
        "type": dict,
        "schema": {
            "fetch_timeout": {"type": (int, float), "default": 15},
            "cache_ttl": {"type": (int, float), "default": 60},
            "auto_select": {"type": bool, "default": True},
            "local_urls": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_LOCAL_URLS),
            },
        },
        "default": {},
    },
    "sync": {
        "type": dict,
        "schema": {
            "frequency": {"type": str, "default": "0"},
            "jitter_seconds": {"type": (int, float), "default": 5},
            "mode": {"type": str, "default": "normal"},
            "safe": {"type": bool, "default": True},
            "use_custom_fields": {"type": bool, "default": True},
            "compare_manifests": {"type": bool, "default": False},
        },
        "default": {},
    },
    "protection": {
        "type": dict,
        "schema": {
            "names": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_PROTECTED_NAMES),
            },
            "ids": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_PROTECTED_IDS),
            },
            "manifest_urls": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_PROTECTED_URLS),
            },
        },
        "default": {},
    },
    "notify": {
        "type": dict,
        "schema": {
            "webhook_url": {"type": str, "default": ""},
            "timeout": {"type": (int, float), "default": 10},
        },
        "default": {},
    },
    "storage": {
        "type": dict,
        "schema": {
            "database": {"type": str, "default": "state/addonsync.db"},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data addonsync needs at runtime."""

    data_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    data_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        """Return a validated configuration section (empty when absent)."""
        value = self.merged.get(name) if self.merged else None
        return value if isinstance(value, dict) else {}


def resolve_data_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = "/data",
) -> Path:
    """Resolve the data directory from the environment."""

    env_source = env or os.environ
    raw = env_source.get("ADDONSYNC_DATA_DIR", default)
    return Path(raw).expanduser()


def load_runtime_configuration(data_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration defaults and data directory overrides."""

    resolved_data = data_dir or resolve_data_dir()
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults, repo_files = _load_directory_configs(
        DEFAULT_CONFIG_DIR,
        diagnostics,
        label="repo defaults",
    )
    files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    data_overrides: Dict[str, Any] = {}

    if not resolved_data.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data directory '{resolved_data}' does not exist.",
            )
        )
        status = "missing"
    elif not resolved_data.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data path '{resolved_data}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        overrides_dir = resolved_data / "config"
        data_overrides, override_files = _load_directory_configs(
            overrides_dir,
            diagnostics,
            label="data overrides",
        )
        files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, data_overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        data_dir=resolved_data,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        data_overrides=data_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"No configuration directory found at '{directory}' ({label}).",
                source=directory,
            )
        )
        return data, loaded_files

    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' ({label}) is not a directory.",
                source=directory,
            )
        )
        return data, loaded_files

    yaml_files = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))

    for yaml_file in yaml_files:
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Failed to parse '{yaml_file}': {exc}",
                    source=yaml_file,
                )
            )
            continue

        if content is None:
            loaded_files.append(yaml_file)
            continue

        if not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                    source=yaml_file,
                )
            )
            continue

        _deep_merge_dicts(data, dict(content))
        loaded_files.append(yaml_file)

    if not loaded_files:
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No YAML files found under '{directory}' ({label}).",
                source=directory,
            )
        )

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    if not isinstance(target, dict):
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration section '{path}' must be a mapping.",
            )
        )
        return

    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown configuration key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
            # Nested defaults still need to be filled in.
            if spec.get("type") is dict and isinstance(target.get(key), dict):
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
                continue
            _validate_section(value, spec.get("schema", {}), child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a list.",
                    )
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            if item_type is not None:
                filtered: List[Any] = []
                for idx, item in enumerate(value):
                    if isinstance(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{item_type.__name__}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and (
            not isinstance(value, expected_type)
            # bool is an int subclass; do not let `true` pass as a number.
            or (isinstance(value, bool) and bool not in _as_tuple(expected_type))
        ):
            if isinstance(expected_type, tuple):
                type_name = ", ".join(t.__name__ for t in expected_type)
            else:
                type_name = expected_type.__name__
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {type_name}.",
                )
            )
            target[key] = _default_from_spec(spec)


def _as_tuple(expected_type: Any) -> Tuple[type, ...]:
    return expected_type if isinstance(expected_type, tuple) else (expected_type,)


__all__ = [
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_LOCAL_URLS",
    "DEFAULT_PROTECTED_IDS",
    "DEFAULT_PROTECTED_NAMES",
    "DEFAULT_PROTECTED_URLS",
    "Diagnostic",
    "load_runtime_configuration",
    "resolve_data_dir",
]
