"""Configuration loading and validation for YAML-based rcspota settings."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from rcspota.core.errors import ConfigLoadError, ConfigValidationError
from rcspota.core.model import OtaConfig, TransportSpec

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


# Booleans stay strings so "yes"/"on" are not silently coerced.
UniqueKeyLoader.yaml_implicit_resolvers = {
    first_char: [(tag, regexp) for tag, regexp in mappings if tag != "tag:yaml.org,2002:bool"]
    for first_char, mappings in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedConfig:
    config: OtaConfig
    source: Path | None


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "rcspota/config.yaml"


def _load_schema_validator() -> Any:
    schema_text = resources.files("rcspota.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def normalize_uuid(value: str, *, context: str) -> str:
    """Lower-case a UUID and widen 16/32-bit forms onto the Bluetooth base UUID."""
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigValidationError(f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string")
    if len(normalized) == 4:
        return f"0000{normalized}{_BASE_UUID_SUFFIX}"
    if len(normalized) == 8:
        return f"{normalized}{_BASE_UUID_SUFFIX}"
    return normalized


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ConfigValidationError(f"{context} must be boolean true/false")


def _build_transport(doc: dict[str, Any]) -> TransportSpec:
    defaults = TransportSpec()
    return TransportSpec(
        service_uuid=normalize_uuid(
            doc.get("service_uuid", defaults.service_uuid),
            context="transport.service_uuid",
        ),
        write_char_uuid=normalize_uuid(
            doc.get("write_char_uuid", defaults.write_char_uuid),
            context="transport.write_char_uuid",
        ),
        notify_char_uuid=normalize_uuid(
            doc.get("notify_char_uuid", defaults.notify_char_uuid),
            context="transport.notify_char_uuid",
        ),
        write_with_response=_normalize_bool(
            doc.get("write_with_response", defaults.write_with_response),
            context="transport.write_with_response",
        ),
        connect_timeout_s=float(doc.get("connect_timeout_s", defaults.connect_timeout_s)),
    )


def build_config(doc: dict[str, Any], source: Path | str = "<memory>") -> OtaConfig:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    defaults = OtaConfig()
    config = OtaConfig(
        command_timeout_s=float(doc.get("command_timeout_s", defaults.command_timeout_s)),
        reconnect_timeout_s=float(doc.get("reconnect_timeout_s", defaults.reconnect_timeout_s)),
        offline_timeout_s=float(doc.get("offline_timeout_s", defaults.offline_timeout_s)),
        reconnect_settle_s=float(doc.get("reconnect_settle_s", defaults.reconnect_settle_s)),
        max_retries=int(doc.get("max_retries", defaults.max_retries)),
        transfer_block_size=int(doc.get("transfer_block_size", defaults.transfer_block_size)),
        transport=_build_transport(doc.get("transport", {})),
    )
    if config.offline_timeout_s >= config.reconnect_timeout_s:
        raise ConfigValidationError(
            f"offline_timeout_s ({config.offline_timeout_s}) must be shorter than "
            f"reconnect_timeout_s ({config.reconnect_timeout_s}) in {source}"
        )
    return config


def load_config(path: str | Path | None = None) -> LoadedConfig:
    if path is not None:
        source = Path(path)
        if not source.exists():
            raise ConfigLoadError(f"Config file not found: {source}")
    else:
        source = default_config_path()
        if not source.exists():
            LOGGER.debug("No config at %s, using defaults", source)
            return LoadedConfig(config=OtaConfig(), source=None)

    config = build_config(_read_yaml(source), source)
    LOGGER.debug("Loaded config from %s", source)
    return LoadedConfig(config=config, source=source)
