"""Load, validate, and hot-reload the synchronizable entity type table.

The table lives in ``entity_types.yaml`` alongside this module.  Each type
declares one merge strategy from a closed set:

    WholeRecordMerge   - incoming fields replace stored fields
    FieldMerge         - as above, but named map fields merge per sub-key
    SingletonCollapse  - one record per owner, batch collapses to the newest

Usage::

    from tandem.sync.registry import get_sync_registry

    registry = get_sync_registry()
    spec = registry.get("subjects")
    spec.merge_fields          # ("history",)
    spec.is_singleton          # False
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Union

import yaml

logger = logging.getLogger("tandem.sync.registry")

# Path to the YAML file sitting next to this module
_REGISTRY_PATH = Path(__file__).parent / "entity_types.yaml"


# ---------------------------------------------------------------------------
# Strategy variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WholeRecordMerge:
    """Incoming top-level fields replace the stored ones."""

    kind: str = field(default="whole_record", init=False)


@dataclass(frozen=True)
class FieldMerge:
    """Whole-record merge, except ``fields`` which merge key-by-key."""

    fields: tuple[str, ...]
    kind: str = field(default="field_merge", init=False)


@dataclass(frozen=True)
class SingletonCollapse:
    """At most one live record per owner; identity is the owner alone."""

    merge_fields: tuple[str, ...] = ()
    kind: str = field(default="singleton", init=False)


MergeStrategy = Union[WholeRecordMerge, FieldMerge, SingletonCollapse]

_STRATEGY_NAMES = ("whole_record", "field_merge", "singleton")


@dataclass(frozen=True)
class EntityTypeSpec:
    """One synchronizable entity type.

    Attributes:
        name:            Wire name used as the key in ``changes``.
        strategy:        Merge strategy variant.
        required_fields: Fields a live record must carry.
        default_id:      Id assigned to singleton records pushed without one.
    """

    name: str
    strategy: MergeStrategy
    required_fields: tuple[str, ...] = ()
    default_id: str | None = None

    @property
    def is_singleton(self) -> bool:
        return isinstance(self.strategy, SingletonCollapse)

    @property
    def merge_fields(self) -> tuple[str, ...]:
        if isinstance(self.strategy, FieldMerge):
            return self.strategy.fields
        if isinstance(self.strategy, SingletonCollapse):
            return self.strategy.merge_fields
        return ()


@dataclass
class SyncTypeRegistry:
    """Complete, validated entity type table.

    Attributes:
        version: Table schema version string.
        types:   Type name -> spec, in declaration order.
    """

    version: str
    types: dict[str, EntityTypeSpec]
    _raw: dict = field(default_factory=dict, repr=False)

    def __contains__(self, name: object) -> bool:
        return name in self.types

    def __iter__(self) -> Iterator[EntityTypeSpec]:
        return iter(self.types.values())

    def __len__(self) -> int:
        return len(self.types)

    @property
    def names(self) -> list[str]:
        return list(self.types)

    def get(self, name: str) -> EntityTypeSpec:
        """Return the spec for ``name``.

        Raises:
            KeyError: If the type is not declared.
        """
        try:
            return self.types[name]
        except KeyError:
            raise KeyError(f"Unknown entity type: {name!r}") from None

    def singletons(self) -> list[EntityTypeSpec]:
        return [spec for spec in self.types.values() if spec.is_singleton]

    def describe(self) -> list[dict[str, Any]]:
        """Public description of the table, served to clients."""
        return [
            {
                "name": spec.name,
                "strategy": spec.strategy.kind,
                "mergeFields": list(spec.merge_fields),
                "requiredFields": list(spec.required_fields),
                "singleton": spec.is_singleton,
            }
            for spec in self.types.values()
        ]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when entity_types.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Entity type table not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _str_tuple(value: Any, where: str, errors: list[str]) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(
        isinstance(v, str) and v for v in value
    ):
        errors.append(f"{where} must be a list of non-empty strings, got {value!r}")
        return ()
    return tuple(value)


def _validate_and_build(raw: dict) -> SyncTypeRegistry:
    """Validate the raw YAML dict and construct a SyncTypeRegistry.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If the table is missing or malformed.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    types_raw = raw.get("entity_types")
    if not types_raw or not isinstance(types_raw, dict):
        errors.append("'entity_types' section is missing or empty")
        types_raw = {}

    types: dict[str, EntityTypeSpec] = {}
    for name, cfg in types_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"entity_types.{name} must be a mapping")
            continue

        kind = cfg.get("strategy")
        if kind not in _STRATEGY_NAMES:
            errors.append(
                f"entity_types.{name}.strategy must be one of "
                f"{', '.join(_STRATEGY_NAMES)}; got {kind!r}"
            )
            continue

        merge_fields = _str_tuple(
            cfg.get("merge_fields"), f"entity_types.{name}.merge_fields", errors
        )
        required = _str_tuple(
            cfg.get("required"), f"entity_types.{name}.required", errors
        )

        strategy: MergeStrategy
        if kind == "whole_record":
            if merge_fields:
                errors.append(
                    f"entity_types.{name}: whole_record types cannot declare merge_fields"
                )
            strategy = WholeRecordMerge()
        elif kind == "field_merge":
            if not merge_fields:
                errors.append(
                    f"entity_types.{name}: field_merge types need at least one merge field"
                )
            strategy = FieldMerge(fields=merge_fields)
        else:
            strategy = SingletonCollapse(merge_fields=merge_fields)

        default_id = cfg.get("default_id")
        if default_id is not None and not isinstance(default_id, str):
            errors.append(f"entity_types.{name}.default_id must be a string")
            default_id = None
        if strategy.kind == "singleton" and not default_id:
            default_id = name

        types[name] = EntityTypeSpec(
            name=name,
            strategy=strategy,
            required_fields=required,
            default_id=default_id,
        )

    if errors:
        raise ConfigValidationError(
            f"entity_types.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncTypeRegistry(version=version, types=types, _raw=raw)


def load_sync_registry(path: Path | None = None) -> SyncTypeRegistry:
    """Load and validate the entity type table from disk.

    Args:
        path: Override path to YAML. Uses the bundled entity_types.yaml by default.
    """
    target = path or _REGISTRY_PATH
    raw = _load_yaml(target)
    registry = _validate_and_build(raw)
    logger.info(
        "Loaded %d entity types (v%s) from %s", len(registry), registry.version, target
    )
    return registry


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_registry: SyncTypeRegistry | None = None
_registry_lock = threading.Lock()


def get_sync_registry() -> SyncTypeRegistry:
    """Return the global SyncTypeRegistry, loading it on first call.

    Honours ``Settings.sync_types_path`` when set.
    """
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:  # double-checked locking
                from tandem.config import get_settings

                override = get_settings().sync_types_path
                _registry = load_sync_registry(Path(override) if override else None)
    return _registry


def reload_sync_registry(path: Path | None = None) -> SyncTypeRegistry:
    """Reload the table from disk and replace the global singleton.

    If validation fails, the old table is retained and the error is re-raised.
    """
    global _registry
    new_registry = load_sync_registry(path)  # validate before acquiring lock
    with _registry_lock:
        old_version = _registry.version if _registry else "none"
        _registry = new_registry
    logger.info("Reloaded entity type table: %s → %s", old_version, new_registry.version)
    return new_registry
