"""Shared configuration loader for the overlay catalog."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .catalog.index_store import DEFAULT_DB_PATH
from .model import PROTOCOL_ID


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".clawdbot-overlay.yaml"
DEFAULT_RPC_PORT = 8332
_CONFIG_PATH_OVERRIDE: Path | None = None


@dataclass
class OverlayConfig:
    """Settings for the catalog database and payload validation."""

    db_path: Path = DEFAULT_DB_PATH
    protocol_id: str = PROTOCOL_ID
    verify_identity_keys: bool = False


@dataclass
class RPCConfig:
    """Connection details for the node the scanner reads transactions from."""

    user: str
    password: str
    host: str = "127.0.0.1"
    port: int = DEFAULT_RPC_PORT
    use_https: bool = False

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _resolve_path(config_path: str | Path | None) -> tuple[Path, bool]:
    explicit = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    if config_path is not None:
        return Path(config_path).expanduser(), explicit
    return _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH, explicit


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _section(file_config: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _coerce_port(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid RPC port: {raw}") from exc


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _parse_endpoint(raw: str | None) -> tuple[str | None, int | None, bool | None]:
    if not raw:
        return None, None, None
    parsed = urlparse(raw)
    if not parsed.scheme and not parsed.hostname:
        raise ConfigurationError(f"Invalid RPC endpoint URL: {raw}")
    host = parsed.hostname or None
    port = parsed.port
    use_https = parsed.scheme.lower() == "https" if parsed.scheme else None
    return host, port, use_https


def load_overlay_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> OverlayConfig:
    """Load catalog settings from overrides, environment, then YAML."""

    env_map = os.environ if env is None else env
    path, explicit = _resolve_path(config_path)
    catalog_section = _section(_load_config_file(path, required=explicit), "catalog", path)
    override_map = dict(overrides or {})

    db_path = _first_value(
        override_map.get("db_path"),
        env_map.get("CLAWDBOT_OVERLAY_DB_PATH"),
        catalog_section.get("db_path"),
        default=DEFAULT_DB_PATH,
    )
    protocol_id = _first_value(
        override_map.get("protocol_id"),
        env_map.get("CLAWDBOT_OVERLAY_PROTOCOL_ID"),
        catalog_section.get("protocol_id"),
        default=PROTOCOL_ID,
    )
    if not isinstance(protocol_id, str) or not protocol_id:
        raise ConfigurationError("protocol_id must be a non-empty string")

    verify_raw = _first_value(
        override_map.get("verify_identity_keys"),
        env_map.get("CLAWDBOT_OVERLAY_VERIFY_KEYS"),
        catalog_section.get("verify_identity_keys"),
        default=False,
    )
    verify = _coerce_bool(verify_raw)
    if verify is None:
        raise ConfigurationError(f"Invalid boolean for verify_identity_keys: {verify_raw}")

    return OverlayConfig(
        db_path=Path(str(db_path)).expanduser(),
        protocol_id=protocol_id,
        verify_identity_keys=verify,
    )


#: RPCConfig field -> environment variable; YAML keys share the field names.
_RPC_ENV_VARS = {
    "user": "OVERLAY_RPC_USER",
    "password": "OVERLAY_RPC_PASSWORD",
    "host": "OVERLAY_RPC_HOST",
    "port": "OVERLAY_RPC_PORT",
    "use_https": "OVERLAY_RPC_USE_HTTPS",
}
_RPC_COERCERS = {"port": _coerce_port, "use_https": _coerce_bool}
_RPC_DEFAULTS = {"host": "127.0.0.1", "port": DEFAULT_RPC_PORT, "use_https": False}


def load_rpc_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RPCConfig:
    """Load node RPC settings.

    Each field resolves from overrides, then an endpoint URL, then
    ``OVERLAY_RPC_*`` variables, then the ``rpc`` section of the YAML file.
    """

    env_map = os.environ if env is None else env
    path, explicit = _resolve_path(config_path)
    rpc_section = _section(_load_config_file(path, required=explicit), "rpc", path)
    override_map = dict(overrides or {})

    endpoint_url = _first_value(
        override_map.get("endpoint"),
        env_map.get("OVERLAY_RPC_ENDPOINT") or env_map.get("OVERLAY_RPC_URL"),
        rpc_section.get("endpoint"),
    )
    from_endpoint = dict(zip(("host", "port", "use_https"), _parse_endpoint(endpoint_url)))

    resolved: dict[str, Any] = {}
    for name, env_var in _RPC_ENV_VARS.items():
        candidates = [
            override_map.get(name),
            from_endpoint.get(name),
            env_map.get(env_var),
            rpc_section.get(name),
        ]
        coerce = _RPC_COERCERS.get(name)
        if coerce is not None:
            candidates = [coerce(value) for value in candidates]
        resolved[name] = _first_value(*candidates, default=_RPC_DEFAULTS.get(name))

    if not resolved["user"] or not resolved["password"]:
        raise ConfigurationError(
            "RPC credentials must be provided via OVERLAY_RPC_* environment variables or a config file"
        )
    return RPCConfig(**resolved)


__all__ = [
    "ConfigurationError",
    "DEFAULT_CONFIG_PATH",
    "OverlayConfig",
    "RPCConfig",
    "load_overlay_config",
    "load_rpc_config",
    "set_default_config_path",
]
