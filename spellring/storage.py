"""TOML-backed document store for ring and caster records.

Collections are declared in ``config/storage.toml`` with a path template, a
schema version and a version scope.  Each record lives in its own TOML file and
is replaced atomically.  Before a collection is touched the datastore brings it
up to the declared schema version by running the scripts found under
``migrations/<collection>/``; applied versions are tracked in the
``schema_version.toml`` file at the root of the version scope.

Ring records carry a ``revision`` counter.  :meth:`DataStore.save` refuses to
overwrite a ring whose revision moved on since the caller loaded it, so two
clients storing into the same ring cannot silently push it over capacity.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import math
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, MutableMapping, Optional, Protocol
from urllib.parse import quote, unquote

import tomllib

log = logging.getLogger(__name__)

RINGS_COLLECTION = "rings"
CASTERS_COLLECTION = "casters"


class HostDocumentStore(Protocol):
    """Persistence scoped to one ring item."""

    async def load(self, item_id: str) -> Mapping[str, Any] | None:
        ...

    async def save(
        self,
        item_id: str,
        raw: Mapping[str, Any],
        *,
        expected_revision: int | None = None,
    ) -> bool:
        ...


def _is_site_packages(path: Path) -> bool:
    normalized = {part.lower() for part in path.parts}
    return "site-packages" in normalized or "dist-packages" in normalized


def resolve_storage_root(package_root: Path) -> Path:
    """Determine where ring data should be written.

    Data sits next to the checkout by default.  An explicit
    ``SPELLRING_DATA_ROOT`` (or ``SPELLRING_STORAGE_ROOT``) wins, and an
    installed or read-only package falls back to the working directory.
    """

    override = os.getenv("SPELLRING_DATA_ROOT") or os.getenv("SPELLRING_STORAGE_ROOT")
    if override:
        return Path(override).expanduser().resolve()

    if _is_site_packages(package_root) or not os.access(package_root, os.W_OK):
        return Path.cwd().resolve()

    return package_root


# ---------------------------------------------------------------------------
# TOML serialisation
# ---------------------------------------------------------------------------


def _normalize_for_toml(value: Any) -> Any:
    # TOML has no null, so ``None`` members are dropped rather than written.
    if isinstance(value, Mapping):
        return {
            str(key): _normalize_for_toml(item)
            for key, item in value.items()
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        return [_normalize_for_toml(item) for item in value if item is not None]
    if isinstance(value, (str, int, bool)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else 0.0
    if isinstance(value, Path):
        return str(value)
    return str(value)


_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\b": "\\b",
    "\t": "\\t",
    "\n": "\\n",
    "\f": "\\f",
    "\r": "\\r",
}


def _quote_string(value: str) -> str:
    chars = []
    for char in value:
        if char in _ESCAPES:
            chars.append(_ESCAPES[char])
        elif 0x20 <= ord(char) <= 0x7E:
            chars.append(char)
        else:
            chars.append(f"\\u{ord(char):04x}" if ord(char) <= 0xFFFF else f"\\U{ord(char):08x}")
    return '"' + "".join(chars) + '"'


def _format_key(key: str) -> str:
    if key and all(char.isalnum() or char in "-_" for char in key) and key.isascii():
        return key
    return _quote_string(key)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        text = repr(value)
        return text if any(char in text for char in ".eE") else f"{text}.0"
    if isinstance(value, str):
        return _quote_string(value)
    if isinstance(value, list):
        return "[" + ", ".join(_format_value(item) for item in value) + "]"
    if isinstance(value, Mapping):
        pairs = ", ".join(
            f"{_format_key(key)} = {_format_value(item)}" for key, item in value.items()
        )
        return "{ " + pairs + " }" if pairs else "{}"
    return _quote_string(str(value))


def _is_table_array(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(item, Mapping) for item in value)
    )


def _emit_table(
    data: Mapping[str, Any], *, path: tuple[str, ...], output: list[str]
) -> None:
    scalars = [(k, v) for k, v in data.items() if not isinstance(v, Mapping) and not _is_table_array(v)]
    tables = [(k, v) for k, v in data.items() if isinstance(v, Mapping)]
    arrays = [(k, v) for k, v in data.items() if _is_table_array(v)]

    for key, value in sorted(scalars):
        output.append(f"{_format_key(key)} = {_format_value(value)}")

    for key, value in sorted(tables, key=lambda item: item[0]):
        header = ".".join(_format_key(part) for part in (*path, key))
        if output and output[-1] != "":
            output.append("")
        output.append(f"[{header}]")
        _emit_table(value, path=(*path, key), output=output)

    # Array order is meaningful: stored spells are addressed by position.
    for key, items in sorted(arrays, key=lambda item: item[0]):
        header = ".".join(_format_key(part) for part in (*path, key))
        for item in items:
            if output and output[-1] != "":
                output.append("")
            output.append(f"[[{header}]]")
            _emit_table(item, path=(*path, key), output=output)


def toml_dumps(data: Mapping[str, Any]) -> str:
    normalized = _normalize_for_toml(data)
    if not isinstance(normalized, Mapping):
        raise TypeError("Top level TOML document must be a mapping")
    output: list[str] = []
    _emit_table(normalized, path=(), output=output)
    return "\n".join(output) + "\n"


def read_toml(path: Path) -> Any:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return None
    except (tomllib.TOMLDecodeError, OSError) as exc:
        log.warning("Unreadable TOML document %s: %s", path, exc)
        return None


def write_toml(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = toml_dumps(payload)
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf8", dir=path.parent, suffix=".tmp", delete=False
        ) as handle:
            temp_path = Path(handle.name)
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
        temp_path = None
    finally:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Collection configuration
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CollectionConfig:
    name: str
    path: str
    version: int
    version_scope: str | None = None
    migration_key: str | None = None

    def resolve_path(self, base: Path, key: str) -> Path:
        return base / self.path.format(key=encode_key(key))

    def resolve_scope_path(self, base: Path) -> Path:
        return (base / (self.version_scope or Path(self.path).parent)).resolve()

    def record_directory(self, base: Path) -> Path:
        return self.resolve_path(base, "__placeholder__").parent


def load_storage_config(path: Path) -> dict[str, CollectionConfig]:
    try:
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise RuntimeError(f"Missing storage configuration at {path}") from exc

    raw_collections = payload.get("collections")
    if not isinstance(raw_collections, Mapping):
        raise RuntimeError("storage configuration must define a [collections] table")

    collections: dict[str, CollectionConfig] = {}
    for name, options in raw_collections.items():
        if not isinstance(options, Mapping):
            continue
        path_value = str(options.get("path", "")).strip()
        if "{key}" not in path_value:
            raise RuntimeError(f"Collection {name!r} path must contain a {{key}} placeholder")
        version_scope = options.get("version_scope")
        collections[str(name)] = CollectionConfig(
            name=str(name),
            path=path_value,
            version=int(options.get("version", 0)),
            version_scope=str(version_scope) if version_scope is not None else None,
            migration_key=str(options.get("migration") or name),
        )
    return collections


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class MigrationModule:
    from_version: int
    to_version: int
    apply: Callable[["MigrationContext"], None]
    description: str


@dataclass(slots=True)
class MigrationContext:
    collection: CollectionConfig
    config: Mapping[str, CollectionConfig]
    base: Path
    scope_path: Path

    def record_directory(self) -> Path:
        return self.collection.record_directory(self.base)

    def log(self, message: str) -> None:
        log.info("[migration:%s] %s", self.collection.name, message)


class MissingMigrationError(RuntimeError):
    pass


class VersionManager:
    def __init__(
        self,
        *,
        base: Path,
        collections: Mapping[str, CollectionConfig],
        migrations_base: Path,
    ) -> None:
        self._base = base
        self._collections = collections
        self._migrations_base = migrations_base
        self._cache: dict[str, int] = {}
        self._modules: dict[str, list[MigrationModule]] = {}

    def ensure(self, collection: CollectionConfig) -> None:
        key = collection.migration_key or collection.name
        current = self._cache.get(key)
        if current is None:
            current = self._read_version(collection)
            self._cache[key] = current
        target = collection.version
        if current >= target:
            return

        migrations = self._load_migrations(key)
        plan: list[MigrationModule] = []
        version = current
        while version < target:
            step = next((m for m in migrations if m.from_version == version), None)
            if step is None:
                raise MissingMigrationError(
                    f"Missing migration for {collection.name!r}: {version} -> {target}"
                )
            plan.append(step)
            version = step.to_version

        if version != target:
            raise MissingMigrationError(
                f"Incomplete migration chain for {collection.name!r}: {current} -> {target}"
            )

        scope_path = collection.resolve_scope_path(self._base)
        scope_path.mkdir(parents=True, exist_ok=True)
        context = MigrationContext(
            collection=collection,
            config=self._collections,
            base=self._base,
            scope_path=scope_path,
        )
        for step in plan:
            log.info(
                "Migrating %s %d -> %d: %s",
                collection.name,
                step.from_version,
                step.to_version,
                step.description,
            )
            step.apply(context)
            self._cache[key] = step.to_version
        self._write_version(collection, target)

    def _versions_file(self, collection: CollectionConfig) -> Path:
        return collection.resolve_scope_path(self._base) / "schema_version.toml"

    def _read_version(self, collection: CollectionConfig) -> int:
        payload = read_toml(self._versions_file(collection))
        if not isinstance(payload, Mapping):
            return 0
        versions = payload.get("collections")
        if not isinstance(versions, Mapping):
            return 0
        try:
            return int(versions.get(collection.migration_key or collection.name, 0))
        except (TypeError, ValueError):
            return 0

    def _write_version(self, collection: CollectionConfig, version: int) -> None:
        path = self._versions_file(collection)
        payload = read_toml(path)
        if not isinstance(payload, MutableMapping):
            payload = {}
        versions = payload.get("collections")
        if not isinstance(versions, MutableMapping):
            versions = {}
            payload["collections"] = versions
        versions[collection.migration_key or collection.name] = int(version)
        write_toml(path, payload)

    def _load_migrations(self, key: str) -> list[MigrationModule]:
        cached = self._modules.get(key)
        if cached is not None:
            return cached
        directory = self._migrations_base / key
        modules: list[MigrationModule] = []
        for path in sorted(directory.glob("*.py")) if directory.is_dir() else ():
            if path.name.startswith("__"):
                continue
            spec = importlib.util.spec_from_file_location(
                f"migrations.{key}.{path.stem}", path
            )
            if spec is None or spec.loader is None:
                continue
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            from_version = getattr(module, "FROM_VERSION", None)
            to_version = getattr(module, "TO_VERSION", None)
            apply = getattr(module, "apply", None)
            if not isinstance(from_version, int) or not isinstance(to_version, int):
                log.warning("Skipping migration %s without version markers", path.name)
                continue
            if not callable(apply):
                log.warning("Skipping migration %s without an apply()", path.name)
                continue
            modules.append(
                MigrationModule(
                    from_version=from_version,
                    to_version=to_version,
                    apply=apply,
                    description=str(getattr(module, "DESCRIPTION", path.stem)),
                )
            )
        modules.sort(key=lambda module: module.from_version)
        self._modules[key] = modules
        return modules


# ---------------------------------------------------------------------------
# DataStore
# ---------------------------------------------------------------------------


def encode_key(key: str) -> str:
    return quote(str(key), safe="")


def decode_key(filename: str) -> str:
    return unquote(filename)


def _revision_of(payload: Any) -> int:
    if not isinstance(payload, Mapping):
        return 0
    try:
        return max(0, int(payload.get("revision", 0)))
    except (TypeError, ValueError):
        return 0


class DataStore:
    """Asynchronous record store routing collections based on configuration."""

    def __init__(
        self,
        *,
        storage_root: Path | None = None,
        config_path: Path | None = None,
        migrations_path: Path | None = None,
    ) -> None:
        package_root = Path(__file__).resolve().parent.parent
        self._storage_root = storage_root or resolve_storage_root(package_root)
        self._config_path = config_path or package_root / "config" / "storage.toml"
        self._collections = load_storage_config(self._config_path)
        self._versions = VersionManager(
            base=self._storage_root,
            collections=self._collections,
            migrations_base=migrations_path or package_root / "migrations",
        )
        self._lock = asyncio.Lock()

    @property
    def storage_root(self) -> Path:
        return self._storage_root

    # Host document store contract --------------------------------------

    async def load(self, item_id: str) -> Optional[dict[str, Any]]:
        return await self.get(RINGS_COLLECTION, item_id)

    async def save(
        self,
        item_id: str,
        raw: Mapping[str, Any],
        *,
        expected_revision: int | None = None,
    ) -> bool:
        async with self._lock:
            config = self._collection(RINGS_COLLECTION)
            self._versions.ensure(config)
            path = config.resolve_path(self._storage_root, item_id)
            current = _revision_of(read_toml(path))
            if expected_revision is not None and current != expected_revision:
                log.warning(
                    "Refusing to save ring %s: revision %d was loaded but %d is stored",
                    item_id,
                    expected_revision,
                    current,
                )
                return False
            payload = dict(raw)
            payload["revision"] = current + 1
            try:
                write_toml(path, payload)
            except OSError:
                log.exception("Failed to persist ring %s", item_id)
                return False
            return True

    # Generic record access ---------------------------------------------

    async def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            config = self._collection(collection)
            self._versions.ensure(config)
            payload = read_toml(config.resolve_path(self._storage_root, key))
            if isinstance(payload, MutableMapping):
                return dict(payload)
            return None

    async def set(self, collection: str, key: str, value: Mapping[str, Any]) -> None:
        async with self._lock:
            config = self._collection(collection)
            self._versions.ensure(config)
            write_toml(config.resolve_path(self._storage_root, key), value)

    async def delete(self, collection: str, key: str) -> None:
        async with self._lock:
            config = self._collection(collection)
            self._versions.ensure(config)
            config.resolve_path(self._storage_root, key).unlink(missing_ok=True)

    async def all(self, collection: str) -> dict[str, dict[str, Any]]:
        async with self._lock:
            config = self._collection(collection)
            self._versions.ensure(config)
            directory = config.record_directory(self._storage_root)
            if not directory.exists():
                return {}
            result: dict[str, dict[str, Any]] = {}
            for path in sorted(directory.glob("*.toml")):
                payload = read_toml(path)
                if isinstance(payload, MutableMapping):
                    result[decode_key(path.stem)] = dict(payload)
            return result

    def _collection(self, name: str) -> CollectionConfig:
        try:
            return self._collections[name]
        except KeyError as exc:
            raise KeyError(f"Unknown collection: {name}") from exc


__all__ = [
    "CASTERS_COLLECTION",
    "DataStore",
    "HostDocumentStore",
    "RINGS_COLLECTION",
    "read_toml",
    "resolve_storage_root",
    "write_toml",
]
