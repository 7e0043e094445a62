"""Configuration loader for vpsctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/vpsctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VPSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VPSCTL_RUNTIME__MODE=simulate
    export VPSCTL_EXPIRY__INTERVAL_SECONDS=60

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load vpsctl configuration. Install with "
        "`pip install vpsctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import ResourceSpec, Role

ENV_PREFIX = "VPSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_RUNTIME_MODES = {"auto", "live", "simulate"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SimulationConfig:
    """Knobs for the simulated runtime."""

    seed: int | None = None
    delay: float = 0.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"seed": self.seed, "delay": self.delay}


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime integration settings."""

    mode: str = "auto"
    lxc_bin: str = "lxc"
    image_remote: str = "images"
    command_timeout: float = 120.0
    simulate: SimulationConfig = SimulationConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode,
            "lxc_bin": self.lxc_bin,
            "image_remote": self.image_remote,
            "command_timeout": self.command_timeout,
            "simulate": self.simulate.to_dict(),
        }


@dataclass(frozen=True)
class ExpiryConfig:
    """Expiry reconciler scheduling."""

    enabled: bool = True
    interval_seconds: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "interval_seconds": self.interval_seconds}


@dataclass(frozen=True)
class ProvisioningConfig:
    """Provisioning pipeline settings."""

    max_workers: int = 4
    defaults: ResourceSpec = ResourceSpec()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_workers": self.max_workers, "defaults": self.defaults.to_dict()}


@dataclass(frozen=True)
class StatusConfig:
    """Status aggregation settings."""

    max_concurrency: int = 4

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_concurrency": self.max_concurrency}


@dataclass(frozen=True)
class SubjectConfig:
    """Default subject used when the CLI is not given one explicitly."""

    id: str = "operator"
    role: Role = Role.ADMIN

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"id": self.id, "role": self.role.value}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vpsctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    runtime: RuntimeConfig
    expiry: ExpiryConfig
    provisioning: ProvisioningConfig
    status: StatusConfig
    subject: SubjectConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "runtime": self.runtime.to_dict(),
            "expiry": self.expiry.to_dict(),
            "provisioning": self.provisioning.to_dict(),
            "status": self.status.to_dict(),
            "subject": self.subject.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vpsctl/config.yml",
    "state_dir": "/var/lib/vpsctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/vpsctl",
    "runtime_dir": "/run/vpsctl",
    "lock_timeout": 30.0,
    "runtime": {
        "mode": "auto",
        "lxc_bin": "lxc",
        "image_remote": "images",
        "command_timeout": 120.0,
        "simulate": {
            "seed": None,
            "delay": 0.0,
        },
    },
    "expiry": {
        "enabled": True,
        "interval_seconds": 300.0,
    },
    "provisioning": {
        "max_workers": 4,
        "defaults": {
            "cpu_cores": 1,
            "ram_mib": 512,
            "disk_gib": 10,
        },
    },
    "status": {
        "max_concurrency": 4,
    },
    "subject": {
        "id": "operator",
        "role": "admin",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "runtime": {"mode", "lxc_bin", "image_remote", "command_timeout", "simulate"},
    "expiry": {"enabled", "interval_seconds"},
    "provisioning": {"max_workers", "defaults"},
    "status": {"max_concurrency"},
    "subject": {"id", "role"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    runtime_map = _as_dict(raw.get("runtime"), "runtime")
    mode = runtime_map.get("mode")
    if mode is not None and str(mode) not in ALLOWED_RUNTIME_MODES:
        allowed = ", ".join(sorted(ALLOWED_RUNTIME_MODES))
        raise ConfigError(f"Unsupported runtime mode '{mode}'. Allowed: {allowed}.")

    simulate_map = _as_dict(runtime_map.get("simulate"), "runtime.simulate")
    unknown_simulate = set(simulate_map.keys()) - {"seed", "delay"}
    if unknown_simulate:
        joined = ", ".join(sorted(unknown_simulate))
        raise ConfigError(f"Unknown runtime.simulate keys: {joined}.")

    provisioning_map = _as_dict(raw.get("provisioning"), "provisioning")
    defaults_map = _as_dict(provisioning_map.get("defaults"), "provisioning.defaults")
    unknown_defaults = set(defaults_map.keys()) - {"cpu_cores", "ram_mib", "disk_gib"}
    if unknown_defaults:
        joined = ", ".join(sorted(unknown_defaults))
        raise ConfigError(f"Unknown provisioning.defaults keys: {joined}.")

    subject_map = _as_dict(raw.get("subject"), "subject")
    role = subject_map.get("role")
    if role is not None and str(role) not in {item.value for item in Role}:
        raise ConfigError(f"Unsupported subject role '{role}'. Allowed: admin, user.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    simulate_mapping = _as_dict(runtime_mapping.get("simulate"), "runtime.simulate")
    seed_value = simulate_mapping.get("seed")
    seed = None if seed_value is None else _expect_int(seed_value, "runtime.simulate.seed", default=0)
    delay = _expect_non_negative_float(
        simulate_mapping.get("delay"), "runtime.simulate.delay", default=0.0
    )
    image_remote = runtime_mapping.get("image_remote", "images")
    runtime = RuntimeConfig(
        mode=str(runtime_mapping.get("mode", "auto")),
        lxc_bin=str(runtime_mapping.get("lxc_bin", "lxc")),
        image_remote="" if image_remote is None else str(image_remote),
        command_timeout=_expect_positive_float(
            runtime_mapping.get("command_timeout"), "runtime.command_timeout", default=120.0
        ),
        simulate=SimulationConfig(seed=seed, delay=delay),
    )

    expiry_mapping = _as_dict(raw.get("expiry"), "expiry")
    expiry = ExpiryConfig(
        enabled=bool(expiry_mapping.get("enabled", True)),
        interval_seconds=_expect_positive_float(
            expiry_mapping.get("interval_seconds"), "expiry.interval_seconds", default=300.0
        ),
    )

    provisioning_mapping = _as_dict(raw.get("provisioning"), "provisioning")
    defaults_mapping = _as_dict(provisioning_mapping.get("defaults"), "provisioning.defaults")
    provisioning = ProvisioningConfig(
        max_workers=_expect_positive_int(
            provisioning_mapping.get("max_workers"), "provisioning.max_workers", default=4
        ),
        defaults=ResourceSpec(
            cpu_cores=_expect_positive_int(
                defaults_mapping.get("cpu_cores"), "provisioning.defaults.cpu_cores", default=1
            ),
            ram_mib=_expect_positive_int(
                defaults_mapping.get("ram_mib"), "provisioning.defaults.ram_mib", default=512
            ),
            disk_gib=_expect_positive_int(
                defaults_mapping.get("disk_gib"), "provisioning.defaults.disk_gib", default=10
            ),
        ),
    )

    status_mapping = _as_dict(raw.get("status"), "status")
    status = StatusConfig(
        max_concurrency=_expect_positive_int(
            status_mapping.get("max_concurrency"), "status.max_concurrency", default=4
        ),
    )

    subject_mapping = _as_dict(raw.get("subject"), "subject")
    subject_id = str(subject_mapping.get("id", "operator")).strip()
    if not subject_id:
        raise ConfigError("subject.id must be a non-empty string.")
    subject = SubjectConfig(id=subject_id, role=Role(str(subject_mapping.get("role", "admin"))))

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        runtime=runtime,
        expiry=expiry,
        provisioning=provisioning,
        status=status,
        subject=subject,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default=default)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ExpiryConfig",
    "ProvisioningConfig",
    "RuntimeConfig",
    "SimulationConfig",
    "StatusConfig",
    "SubjectConfig",
    "load_config",
]
