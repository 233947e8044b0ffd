"""Configuration loading utilities for the drop-folder scanner."""
from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml  # type: ignore

from .errors import DropScanError
from .verdicts import TargetLocation

logger = logging.getLogger(__name__)

ENVIRONMENT_VARIABLE = "DROPSCAN_ENVIRONMENT"
OVERRIDE_PREFIX = "DROPSCAN_"
OVERRIDE_SEPARATOR = "__"

SCANNER_SECTION = "ScannerServer"
FOLDERS_SECTION = "FolderLocations"
MONITOR_SECTION = "Monitor"


class ConfigError(DropScanError):
    """Raised when the configuration file is missing or invalid."""


@dataclass(frozen=True)
class ScannerConfig:
    """Network address of the clamd service."""

    url: str
    port: int
    timeout: float = 120.0


@dataclass(frozen=True)
class FolderConfig:
    """Drop folder and the destination folders for each verdict."""

    drop: Path
    clean: Path
    quarantine: Path
    error: Path
    unknown: Path

    def for_target(self, target: TargetLocation) -> Path:
        return {
            TargetLocation.CLEAN: self.clean,
            TargetLocation.QUARANTINE: self.quarantine,
            TargetLocation.ERROR: self.error,
            TargetLocation.UNKNOWN: self.unknown,
        }[target]


@dataclass(frozen=True)
class MonitorConfig:
    """Options describing how watching and processing should behave."""

    max_concurrent_scans: int = 4
    event_buffer_size: int = 1024
    shutdown_grace_period: float = 30.0
    health_check_interval: float = 5.0
    restart_delay: float = 1.0
    max_restart_delay: float = 60.0
    rescan_on_recovery: bool = False


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration structure."""

    scanner: ScannerConfig
    folders: FolderConfig
    monitor: MonitorConfig = field(default_factory=MonitorConfig)


def load_config(
    path: Path,
    *,
    environment: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load and validate the YAML configuration file.

    ``<stem>.<environment>.yaml`` next to ``path`` is merged over the base
    file when it exists, then ``DROPSCAN_<SECTION>__<KEY>`` variables from
    ``environ`` override single settings.
    """

    if environ is None:
        environ = os.environ
    if environment is None:
        environment = environ.get(ENVIRONMENT_VARIABLE) or None

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    data = _read_mapping(path)
    if environment:
        overlay_path = path.with_name(f"{path.stem}.{environment}{path.suffix}")
        if overlay_path.exists():
            logger.info("Applying %s configuration from %s", environment, overlay_path)
            data = _deep_merge(data, _read_mapping(overlay_path))
        else:
            logger.debug("No %s overlay at %s", environment, overlay_path)
    data = _apply_environment_overrides(data, environ)

    scanner_cfg = _parse_scanner_config(_section(data, SCANNER_SECTION, required=True))
    folders_cfg = _parse_folder_config(_section(data, FOLDERS_SECTION, required=True), config_path=path)
    monitor_cfg = _parse_monitor_config(_section(data, MONITOR_SECTION, required=False))

    return AppConfig(scanner=scanner_cfg, folders=folders_cfg, monitor=monitor_cfg)


def _read_mapping(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML configuration {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")
    return data


def _deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        existing_key = _find_key(merged, key) or key
        current = merged.get(existing_key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[existing_key] = _deep_merge(current, value)
        else:
            merged[existing_key] = copy.deepcopy(value)
    return merged


def _apply_environment_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    result = copy.deepcopy(data)
    for name, value in environ.items():
        if not name.upper().startswith(OVERRIDE_PREFIX) or name.upper() == ENVIRONMENT_VARIABLE:
            continue
        parts = name[len(OVERRIDE_PREFIX):].split(OVERRIDE_SEPARATOR)
        if len(parts) != 2 or not all(parts):
            continue
        section_name, key_name = parts
        section_key = _find_key(result, section_name) or section_name
        section = result.setdefault(section_key, {})
        if not isinstance(section, dict):
            raise ConfigError(f"'{section_key}' section must be a mapping")
        key = _find_key(section, key_name) or key_name
        section[key] = value
        logger.debug("Setting %s.%s overridden from environment", section_key, key)
    return result


def _find_key(mapping: Mapping[str, Any], name: str) -> Optional[str]:
    lowered = name.lower()
    for key in mapping:
        if isinstance(key, str) and key.lower() == lowered:
            return key
    return None


def _section(data: Mapping[str, Any], name: str, *, required: bool) -> Dict[str, Any]:
    key = _find_key(data, name)
    raw = data.get(key) if key is not None else None
    if raw is None:
        if required:
            raise ConfigError(f"'{name}' section is required")
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return raw


def _setting(section: Mapping[str, Any], name: str) -> Any:
    key = _find_key(section, name)
    return section.get(key) if key is not None else None


def _parse_scanner_config(raw: Mapping[str, Any]) -> ScannerConfig:
    url = _setting(raw, "Url")
    if not isinstance(url, str) or not url.strip():
        raise ConfigError(f"{SCANNER_SECTION}.Url must be a non-empty string")

    port_raw = _setting(raw, "Port")
    if port_raw is None:
        raise ConfigError(f"{SCANNER_SECTION}.Port is required")
    port = _parse_int(port_raw, field_name=f"{SCANNER_SECTION}.Port")
    if not 1 <= port <= 65535:
        raise ConfigError(f"{SCANNER_SECTION}.Port must be between 1 and 65535")

    timeout = _parse_positive_float(
        _setting(raw, "Timeout"), default=120.0, field_name=f"{SCANNER_SECTION}.Timeout"
    )

    return ScannerConfig(url=url.strip(), port=port, timeout=timeout)


def _parse_folder_config(raw: Mapping[str, Any], *, config_path: Path) -> FolderConfig:
    def folder(name: str) -> Path:
        value = _setting(raw, name)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{FOLDERS_SECTION}.{name} must be a non-empty string")
        folder_path = Path(value).expanduser()
        if not folder_path.is_absolute():
            folder_path = (config_path.parent / folder_path).resolve()
        return folder_path

    folders = FolderConfig(
        drop=folder("DropFolder"),
        clean=folder("CleanFolder"),
        quarantine=folder("QuarantineFolder"),
        error=folder("ErrorFolder"),
        unknown=folder("UnknownFolder"),
    )
    if folders.drop in (folders.clean, folders.quarantine):
        raise ConfigError(f"{FOLDERS_SECTION}.DropFolder must differ from the clean and quarantine folders")
    return folders


def _parse_monitor_config(raw: Mapping[str, Any]) -> MonitorConfig:
    defaults = MonitorConfig()

    max_scans_raw = _setting(raw, "MaxConcurrentScans")
    max_scans = defaults.max_concurrent_scans
    if max_scans_raw is not None:
        max_scans = _parse_int(max_scans_raw, field_name=f"{MONITOR_SECTION}.MaxConcurrentScans")
        if max_scans <= 0:
            raise ConfigError(f"{MONITOR_SECTION}.MaxConcurrentScans must be positive")

    buffer_raw = _setting(raw, "EventBufferSize")
    buffer_size = defaults.event_buffer_size
    if buffer_raw is not None:
        buffer_size = _parse_int(buffer_raw, field_name=f"{MONITOR_SECTION}.EventBufferSize")
        if buffer_size <= 0:
            raise ConfigError(f"{MONITOR_SECTION}.EventBufferSize must be positive")

    restart_delay = _parse_positive_float(
        _setting(raw, "RestartDelay"),
        default=defaults.restart_delay,
        field_name=f"{MONITOR_SECTION}.RestartDelay",
    )
    max_restart_delay = _parse_positive_float(
        _setting(raw, "MaxRestartDelay"),
        default=max(defaults.max_restart_delay, restart_delay),
        field_name=f"{MONITOR_SECTION}.MaxRestartDelay",
    )
    if max_restart_delay < restart_delay:
        raise ConfigError(f"{MONITOR_SECTION}.MaxRestartDelay must not be smaller than RestartDelay")

    return MonitorConfig(
        max_concurrent_scans=max_scans,
        event_buffer_size=buffer_size,
        shutdown_grace_period=_parse_non_negative_float(
            _setting(raw, "ShutdownGracePeriod"),
            default=defaults.shutdown_grace_period,
            field_name=f"{MONITOR_SECTION}.ShutdownGracePeriod",
        ),
        health_check_interval=_parse_positive_float(
            _setting(raw, "HealthCheckInterval"),
            default=defaults.health_check_interval,
            field_name=f"{MONITOR_SECTION}.HealthCheckInterval",
        ),
        restart_delay=restart_delay,
        max_restart_delay=max_restart_delay,
        rescan_on_recovery=_parse_bool(
            _setting(raw, "RescanOnRecovery"),
            default=defaults.rescan_on_recovery,
            field_name=f"{MONITOR_SECTION}.RescanOnRecovery",
        ),
    )


def _parse_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"{field_name} must be an integer") from exc
    raise ConfigError(f"{field_name} must be an integer")


def _parse_float(value: Any, *, field_name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be numeric") from exc


def _parse_positive_float(value: Any, *, default: float, field_name: str) -> float:
    if value is None:
        return default
    parsed = _parse_float(value, field_name=field_name)
    if parsed <= 0:
        raise ConfigError(f"{field_name} must be positive")
    return parsed


def _parse_non_negative_float(value: Any, *, default: float, field_name: str) -> float:
    if value is None:
        return default
    parsed = _parse_float(value, field_name=field_name)
    if parsed < 0:
        raise ConfigError(f"{field_name} must not be negative")
    return parsed


def _parse_bool(value: Any, *, default: bool, field_name: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "yes", "on", "1"):
            return True
        if normalized in ("false", "no", "off", "0"):
            return False
    raise ConfigError(f"{field_name} must be a boolean")
