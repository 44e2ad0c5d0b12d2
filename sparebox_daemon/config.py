"""
DaemonConfig: YAML file + environment loader.
Priority: env vars > config file > defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from sparebox_daemon.utils.logger import get_logger

log = get_logger("config")

CONFIG_DIR = Path.home() / ".sparebox"
CONFIG_PATH = CONFIG_DIR / "config.yaml"
LEGACY_CONFIG_PATH = CONFIG_DIR / "config.json"

DEFAULT_API_URL = "https://www.sparebox.dev"
DEFAULT_HEARTBEAT_INTERVAL_MS = 60_000
MIN_HEARTBEAT_INTERVAL_MS = 30_000
API_KEY_PREFIX = "sbx_host_"

# Keys written by older daemons (config.json)
_LEGACY_KEYS = {
    "apiKey": "api_key",
    "hostId": "host_id",
    "apiUrl": "api_url",
    "heartbeatIntervalMs": "heartbeat_interval_ms",
    "logLevel": "log_level",
    "logDir": "log_dir",
    "containerRuntime": "container_runtime",
    "agentBinary": "agent_binary",
}


class ConfigError(Exception):
    pass


@dataclass
class DaemonConfig:
    # Control plane
    api_key: str = ""
    host_id: str = ""
    api_url: str = DEFAULT_API_URL
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS

    # System
    log_level: str = "INFO"
    log_dir: str = ""

    # Agent runtimes ("" = autodetect)
    container_runtime: str = ""
    agent_binary: str = ""

    # Agents hosted on this machine, seeds the AgentRegistry
    agents: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def load(cls, yaml_path: str | Path | None = None) -> "DaemonConfig":
        """Load config from YAML file + environment variable overrides."""
        cfg = cls()

        if yaml_path is None:
            yaml_path = CONFIG_PATH if CONFIG_PATH.exists() else LEGACY_CONFIG_PATH
        yaml_path = Path(yaml_path).expanduser()
        if yaml_path.exists():
            try:
                with yaml_path.open(encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as exc:
                log.warning("Failed to read config file at %s: %s", yaml_path, exc)
                data = {}
            if isinstance(data, dict):
                cfg._apply_yaml(data)
            else:
                log.warning("Ignoring config file %s: expected a mapping", yaml_path)

        # ENV overrides (always win)
        cfg._apply_env()
        return cfg

    def _apply_yaml(self, data: dict[str, Any]) -> None:
        for key, val in data.items():
            key = _LEGACY_KEYS.get(key, key)
            if key == "heartbeat_interval_ms":
                try:
                    self.heartbeat_interval_ms = int(val)
                except (TypeError, ValueError):
                    log.warning("Ignoring non-numeric heartbeat interval: %r", val)
            elif key == "agents" and isinstance(val, list):
                self.agents = list(val)
            elif hasattr(self, key) and key != "agents":
                setattr(self, key, "" if val is None else str(val))

    def _apply_env(self) -> None:
        env_map = {
            "SPAREBOX_API_KEY": "api_key",
            "SPAREBOX_HOST_ID": "host_id",
            "SPAREBOX_API_URL": "api_url",
            "SPAREBOX_LOG_LEVEL": "log_level",
        }
        for env_key, attr in env_map.items():
            val = os.environ.get(env_key, "")
            if val:
                setattr(self, attr, val)

    def validate(self) -> list[str]:
        """Return human-readable config errors (empty = valid)."""
        errors: list[str] = []

        if not self.api_key:
            errors.append(
                f"Missing API key. Set SPAREBOX_API_KEY env var or api_key in {CONFIG_PATH}"
            )
        elif not self.api_key.startswith(API_KEY_PREFIX):
            errors.append(
                f'Invalid API key format: expected "{API_KEY_PREFIX}..." prefix, '
                f'got "{self.api_key[:12]}..."'
            )

        if not self.host_id:
            errors.append(
                f"Missing Host ID. Set SPAREBOX_HOST_ID env var or host_id in {CONFIG_PATH}"
            )

        if not self.api_url.startswith(("https://", "http://")):
            errors.append(f'Invalid API URL: "{self.api_url}" must start with https:// or http://')

        if self.heartbeat_interval_ms < MIN_HEARTBEAT_INTERVAL_MS:
            errors.append(
                f"Heartbeat interval too low: {self.heartbeat_interval_ms}ms "
                f"(minimum is {MIN_HEARTBEAT_INTERVAL_MS}ms)"
            )

        for i, entry in enumerate(self.agents):
            if not isinstance(entry, dict) or not (entry.get("id") or entry.get("agentId")):
                errors.append(f"Agent entry #{i} must be a mapping with an 'id'")
                continue
            if not _valid_port(entry.get("port")):
                errors.append(
                    f"Agent entry #{i} has invalid port {entry.get('port')!r} (expected 0-65535)"
                )

        return errors

    def masked_api_key(self) -> str:
        if not self.api_key:
            return "(not set)"
        return f"{self.api_key[:12]}...{self.api_key[-4:]}"


def _valid_port(value: Any) -> bool:
    if value is None or value == "":
        return True
    if isinstance(value, bool):
        return False
    try:
        port = int(value)
    except (TypeError, ValueError, OverflowError):
        return False
    return 0 <= port <= 65535


# Module-level singleton, loaded on first use
_config: DaemonConfig | None = None


def get_config() -> DaemonConfig:
    global _config
    if _config is None:
        _config = DaemonConfig.load()
    return _config


def reload_config(yaml_path: str | Path | None = None) -> DaemonConfig:
    global _config
    _config = DaemonConfig.load(yaml_path)
    return _config
