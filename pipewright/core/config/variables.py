"""
Variable store — layered, immutable variable sets.

Layers are merged in order (defaults first, then environment
overrides); later layers win on key collision. A key whose type
changes between layers, or a required key left unresolved, is a
ConfigError. The result is an immutable VariableSet built once per
run and passed explicitly to every component.

Secrets are referenced by name only. In a layer file:

    DB_PASSWORD:
      secret: prod-db-password

The VariableSet holds a SecretRef; its value never appears in logs,
rendered artifacts, or the run record.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from pipewright.core.errors import ConfigError

logger = logging.getLogger(__name__)

REDACTED = "***"


@dataclass(frozen=True)
class SecretRef:
    """A reference to a secret held in an external store."""

    name: str

    def __str__(self) -> str:
        return f"secret://{self.name}"


class VariableSet(Mapping[str, Any]):
    """Immutable mapping of resolved variables."""

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data = MappingProxyType(dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"VariableSet({self.redacted()!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, VariableSet):
            return dict(self._data) == dict(other._data)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    @property
    def secret_names(self) -> list[str]:
        return sorted(k for k, v in self._data.items() if isinstance(v, SecretRef))

    def is_set(self, key: str) -> bool:
        """Whether a key is present with a non-empty, non-false value."""
        value = self._data.get(key)
        return value is not None and value is not False and value != ""

    def redacted(self) -> dict[str, Any]:
        """Plain dict safe to log or persist: secrets shown as references."""
        return {
            k: str(v) if isinstance(v, SecretRef) else v
            for k, v in sorted(self._data.items())
        }

    def snapshot(self) -> dict[str, Any]:
        """Persistable form; secrets stay ``{"secret": name}`` references."""
        return {
            k: {"secret": v.name} if isinstance(v, SecretRef) else v
            for k, v in sorted(self._data.items())
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> VariableSet:
        return cls({k: _coerce(v) for k, v in data.items()})

    def as_environment(
        self,
        secret_resolver: SecretResolver | None = None,
    ) -> dict[str, str]:
        """Flatten to string environment variables for a job executor.

        Secrets are only materialized here, through the injected resolver.
        Without a resolver they are omitted.
        """
        env: dict[str, str] = {}
        for key, value in self._data.items():
            if isinstance(value, SecretRef):
                if secret_resolver is None:
                    continue
                env[key] = secret_resolver(value.name)
            elif value is None:
                continue
            elif isinstance(value, bool):
                env[key] = "true" if value else "false"
            elif isinstance(value, (dict, list)):
                continue
            else:
                env[key] = str(value)
        return env


# Resolves a secret name to its value; injected, never part of the core.
SecretResolver = Callable[[str], str]


def _coerce(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {"secret"}:
        return SecretRef(name=str(value["secret"]))
    return value


def _type_name(value: Any) -> str:
    return type(value).__name__


def resolve(
    layers: Iterable[Mapping[str, Any]],
    required: Iterable[str] = (),
) -> VariableSet:
    """Merge ordered layers into a VariableSet.

    Args:
        layers: Partial mappings, lowest precedence first.
        required: Keys that must resolve to a non-None value.

    Raises:
        ConfigError: On a type mismatch between layers for the same key,
            or an unresolved required key. ``detail`` is the key name.
    """
    merged: dict[str, Any] = {}
    origin: dict[str, int] = {}
    count = 0

    for index, layer in enumerate(layers):
        count += 1
        for key, raw in layer.items():
            if not isinstance(key, str):
                raise ConfigError(
                    f"Variable keys must be strings, got {key!r} in layer {index}",
                    detail=str(key),
                )
            value = _coerce(raw)
            if key in merged and merged[key] is not None and value is not None:
                if type(merged[key]) is not type(value):
                    raise ConfigError(
                        f"Type mismatch for '{key}': layer {origin[key]} has "
                        f"{_type_name(merged[key])}, layer {index} has {_type_name(value)}",
                        detail=key,
                    )
            merged[key] = value
            origin[key] = index

    for key in required:
        if merged.get(key) is None:
            raise ConfigError(f"Required variable '{key}' is not set", detail=key)

    logger.debug("Resolved %d variables from %d layers", len(merged), count)
    return VariableSet(merged)


def load_layer(path: Path) -> dict[str, Any]:
    """Load one variable layer file (a YAML mapping).

    Raises:
        ConfigError: If the file is missing, unreadable, or not a mapping.
    """
    if not path.is_file():
        raise ConfigError(f"Variable layer not found: {path}", detail=str(path))

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read variable layer {path}: {e}", detail=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}",
            detail=str(path),
        )
    logger.debug("Loaded %d variables from %s", len(data), path)
    return data


SECRET_ENV_PREFIX = "PIPEWRIGHT_SECRET_"


def environ_secret_resolver(name: str) -> str:
    """Look a secret up in ``PIPEWRIGHT_SECRET_<NAME>``.

    The name is upper-cased with ``-`` and ``.`` turned into ``_``.

    Raises:
        ConfigError: If the variable is not set.
    """
    key = SECRET_ENV_PREFIX + name.upper().replace("-", "_").replace(".", "_")
    value = os.environ.get(key)
    if value is None:
        raise ConfigError(f"Secret '{name}' is not available (set {key})", detail=name)
    return value
