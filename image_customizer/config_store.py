"""Offline config-store (hive) patching for a mounted image.

A hive is a hierarchical key/value file inside the image. It must be
attached ("loaded") under an alias before it can be edited, and detached
("unloaded") before the session can commit. Detaching is where contention
shows up: the backend refuses while handles it gave out are still alive,
so unload forces a finalization pass and retries with growing backoff.
"""

from __future__ import annotations

import gc
import logging
import os
import threading
import time
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

import yaml

from .errors import (
    AlreadyLoaded,
    ConfigStoreError,
    ConfigStoreFatal,
    NotLoaded,
    RetryExhausted,
    SessionStateError,
    TransientResourceBusy,
    ValidationFailure,
)
from .lib.command import run_operation
from .logging_utils import BuildLog
from .retry import LinearBackoff, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_UNLOAD_ATTEMPTS = 5
DEFAULT_UNLOAD_BACKOFF = 0.5
DEFAULT_SETTLE_DELAY = 0.2


class ValueType(str, Enum):
    STRING = "string"
    EXPAND_STRING = "expand_string"
    DWORD = "dword"
    QWORD = "qword"

    @property
    def reg_type(self) -> str:
        return {
            ValueType.STRING: "REG_SZ",
            ValueType.EXPAND_STRING: "REG_EXPAND_SZ",
            ValueType.DWORD: "REG_DWORD",
            ValueType.QWORD: "REG_QWORD",
        }[self]


_NUMERIC_LIMITS = {ValueType.DWORD: 2**32, ValueType.QWORD: 2**64}


def coerce_value(value_type: ValueType, value: Any) -> Any:
    if value_type in _NUMERIC_LIMITS:
        if isinstance(value, bool):
            value = int(value)
        try:
            n = int(value, 0) if isinstance(value, str) else int(value)
        except (TypeError, ValueError):
            raise ValidationFailure(f"{value_type.value} value must be numeric, got {value!r}") from None
        if not 0 <= n < _NUMERIC_LIMITS[value_type]:
            raise ValidationFailure(f"{value_type.value} value out of range: {n}")
        return n
    if not isinstance(value, str):
        raise ValidationFailure(f"{value_type.value} value must be a string, got {type(value).__name__}")
    return value


class HandleState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    UNLOAD_PENDING = "unload_pending"


@dataclass
class ConfigStoreHandle:
    alias: str
    backing_file: Path
    state: HandleState = HandleState.UNLOADED
    loaded_at: Optional[datetime] = None
    session: Any = field(default=None, repr=False)


class ConfigStoreBackend(Protocol):
    def load(self, alias: str, backing_file: Path) -> None:
        ...

    def get_value(self, alias: str, key: str, name: str) -> Any:
        ...

    def set_value(self, alias: str, key: str, name: str, value_type: ValueType, value: Any) -> None:
        ...

    def export(self, alias: str, destination: Path) -> None:
        ...

    def unload(self, alias: str) -> None:
        ...


class KeyHandle:
    """An open key in a YAML hive. The hive cannot unload while one is alive."""

    def __init__(self, hive: Dict[str, Any], alias: str, key: str) -> None:
        self._hive = hive
        self.alias = alias
        self.key = key
        self.closed = False

    def __enter__(self) -> "KeyHandle":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def set(self, name: str, value_type: ValueType, value: Any) -> None:
        if self.closed:
            raise ConfigStoreError(f"Key handle {self.alias}\\{self.key} is closed")
        self._hive.setdefault(self.key, {})[name] = {"type": value_type.value, "value": value}

    def get(self, name: str) -> Any:
        entry = (self._hive.get(self.key) or {}).get(name)
        if entry is None:
            raise KeyError(f"{self.alias}\\{self.key}\\{name}")
        return entry.get("value")


class YamlHiveBackend:
    """Hive files stored as YAML: ``{key_path: {value_name: {type, value}}}``."""

    def __init__(self) -> None:
        self._hives: Dict[str, tuple[Path, Dict[str, Any]]] = {}
        self._open_keys: "weakref.WeakSet[KeyHandle]" = weakref.WeakSet()

    def load(self, alias: str, backing_file: Path) -> None:
        if not backing_file.is_file():
            raise ValidationFailure(f"Hive file missing: {backing_file}")
        data = yaml.safe_load(backing_file.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValidationFailure(f"Hive file must contain a mapping: {backing_file}")
        self._hives[alias] = (backing_file, data)

    def _hive(self, alias: str) -> Dict[str, Any]:
        try:
            return self._hives[alias][1]
        except KeyError:
            raise NotLoaded(f"Hive {alias} is not attached") from None

    def open_key(self, alias: str, key: str) -> KeyHandle:
        k = KeyHandle(self._hive(alias), alias, key)
        self._open_keys.add(k)
        return k

    def get_value(self, alias: str, key: str, name: str) -> Any:
        with self.open_key(alias, key) as k:
            return k.get(name)

    def set_value(self, alias: str, key: str, name: str, value_type: ValueType, value: Any) -> None:
        with self.open_key(alias, key) as k:
            k.set(name, value_type, value)

    def export(self, alias: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(yaml.safe_dump(self._hive(alias), sort_keys=True), encoding="utf-8")

    def unload(self, alias: str) -> None:
        backing_file, data = self._hives.get(alias) or (None, None)
        if backing_file is None:
            raise NotLoaded(f"Hive {alias} is not attached")
        busy = [k for k in self._open_keys if k.alias == alias and not k.closed]
        if busy:
            raise TransientResourceBusy(f"Hive {alias} has {len(busy)} open key handle(s)")
        tmp = backing_file.with_name(backing_file.name + ".tmp")
        tmp.write_text(yaml.safe_dump(data, sort_keys=True), encoding="utf-8")
        os.replace(tmp, backing_file)
        del self._hives[alias]


class RegExeBackend:
    """Drives ``reg.exe`` on a Windows build host. Hives attach under HKLM."""

    def __init__(self, *, timeout: float = 120.0, root: str = "HKLM", executable: str = "reg") -> None:
        self.timeout = timeout
        self.root = root
        self.executable = executable

    def _path(self, alias: str, key: str = "") -> str:
        return "\\".join(p for p in (self.root, alias, key.strip("\\")) if p)

    def _run(self, *args: str) -> str:
        r = run_operation([self.executable, *args], timeout=self.timeout)
        if r.timed_out:
            raise ConfigStoreError(f"reg {args[0]} timed out")
        if r.exit_code != 0:
            raise ConfigStoreError(f"reg {args[0]} failed ({r.exit_code}): {r.stderr.strip() or r.stdout.strip()}")
        return r.stdout

    def load(self, alias: str, backing_file: Path) -> None:
        self._run("load", self._path(alias), str(backing_file))

    def get_value(self, alias: str, key: str, name: str) -> Any:
        out = self._run("query", self._path(alias, key), "/v", name)
        for line in out.splitlines():
            parts = line.split(None, 2)
            if len(parts) >= 2 and parts[0] == name and parts[1].startswith("REG_"):
                return parts[2] if len(parts) == 3 else ""
        raise KeyError(f"{alias}\\{key}\\{name}")

    def set_value(self, alias: str, key: str, name: str, value_type: ValueType, value: Any) -> None:
        args = ["add", self._path(alias, key), "/t", value_type.reg_type, "/d", str(value), "/f"]
        if name:
            args[2:2] = ["/v", name]
        else:
            args[2:2] = ["/ve"]
        self._run(*args)

    def export(self, alias: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        self._run("export", self._path(alias), str(destination), "/y")

    def unload(self, alias: str) -> None:
        r = run_operation([self.executable, "unload", self._path(alias)], timeout=self.timeout)
        if not r.ok:
            raise TransientResourceBusy(f"reg unload {alias}: {r.stderr.strip() or r.stdout.strip() or 'busy'}")


BACKENDS = {
    "yaml": YamlHiveBackend,
    "reg": RegExeBackend,
}


class HandleRegistry:
    """Per-process table of attached aliases."""

    def __init__(self) -> None:
        self._handles: Dict[str, ConfigStoreHandle] = {}
        self._lock = threading.Lock()

    def get(self, alias: str) -> Optional[ConfigStoreHandle]:
        with self._lock:
            return self._handles.get(alias)

    def add(self, handle: ConfigStoreHandle) -> None:
        with self._lock:
            if handle.alias in self._handles:
                raise AlreadyLoaded(f"Config store alias {handle.alias} is already loaded")
            self._handles[handle.alias] = handle

    def remove(self, alias: str) -> None:
        with self._lock:
            self._handles.pop(alias, None)

    def aliases(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)


PROCESS_HANDLES = HandleRegistry()

# Session states after which none of its config store handles can be used.
ENDED_SESSION_STATES = {"committed", "discarded", "failed"}


class ConfigStorePatcher:
    def __init__(
        self,
        backend: ConfigStoreBackend,
        *,
        log: Optional[BuildLog] = None,
        registry: HandleRegistry = PROCESS_HANDLES,
        unload_attempts: int = DEFAULT_UNLOAD_ATTEMPTS,
        unload_backoff: float = DEFAULT_UNLOAD_BACKOFF,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        on_fatal: Optional[Callable[[ConfigStoreHandle, ConfigStoreFatal], Any]] = None,
    ) -> None:
        self.backend = backend
        self.log = log
        self.registry = registry
        self.unload_attempts = unload_attempts
        self.unload_backoff = unload_backoff
        self.settle_delay = settle_delay
        self._sleep = sleep
        self.on_fatal = on_fatal

    def _require(self, alias: str) -> ConfigStoreHandle:
        h = self.registry.get(alias)
        if h is None or h.state != HandleState.LOADED:
            raise NotLoaded(f"Config store alias {alias} is not loaded")
        return h

    def is_loaded(self, alias: str) -> bool:
        h = self.registry.get(alias)
        return h is not None and h.state == HandleState.LOADED

    def load(self, alias: str, backing_file: str | Path, *, session: Any) -> ConfigStoreHandle:
        if session is None or not session.live:
            state = getattr(getattr(session, "state", None), "value", None)
            raise SessionStateError(f"Config store {alias} needs a mounted session (state={state})")

        stale = self.registry.get(alias)
        if stale is not None and stale.session is not None and stale.session.state.value in ENDED_SESSION_STATES:
            # A fatal unload leaves the handle behind; its session is gone now.
            logger.warning(
                "Dropping %s handle left by an ended session (state=%s)", alias, stale.session.state.value
            )
            self.registry.remove(alias)

        handle = ConfigStoreHandle(alias=alias, backing_file=Path(backing_file), session=session)
        self.registry.add(handle)
        try:
            self.backend.load(alias, handle.backing_file)
        except BaseException:
            self.registry.remove(alias)
            raise

        handle.state = HandleState.LOADED
        handle.loaded_at = datetime.now(timezone.utc)
        session.config_handles.append(handle)
        logger.info("Loaded config store %s from %s", alias, handle.backing_file)
        if self.log is not None:
            self.log.event("config_store.loaded", alias=alias, backing_file=str(handle.backing_file))
        return handle

    def set(self, alias: str, key: str, name: str, value_type: ValueType | str, value: Any) -> None:
        self._require(alias)
        vt = ValueType(value_type)
        self.backend.set_value(alias, key, name, vt, coerce_value(vt, value))
        logger.info("Set %s\\%s [%s] (%s)", alias, key, name or "(default)", vt.value)

    def get(self, alias: str, key: str, name: str) -> Any:
        self._require(alias)
        return self.backend.get_value(alias, key, name)

    def export(self, alias: str, destination: str | Path) -> Path:
        self._require(alias)
        dest = Path(destination)
        self.backend.export(alias, dest)
        return dest

    def _finalize(self, attempt: int) -> None:
        # Outstanding handles are frequently unreferenced objects awaiting collection.
        collected = gc.collect()
        logger.debug("Unload attempt %d: gc collected %d objects", attempt, collected)
        if self.settle_delay:
            self._sleep(self.settle_delay)

    def unload(self, handle: ConfigStoreHandle | str) -> None:
        alias = handle if isinstance(handle, str) else handle.alias
        h = self.registry.get(alias)
        if h is None or h.state == HandleState.UNLOADED:
            raise NotLoaded(f"Config store alias {alias} is not loaded")

        h.state = HandleState.UNLOAD_PENDING
        started = time.monotonic()
        try:
            retry_with_backoff(
                lambda: self.backend.unload(alias),
                max_attempts=self.unload_attempts,
                backoff=LinearBackoff(self.unload_backoff),
                before_attempt=self._finalize,
                sleep=self._sleep,
                describe=f"unload {alias}",
            )
        except RetryExhausted as e:
            fatal = ConfigStoreFatal(
                f"Config store {alias} could not be unloaded after {e.attempts} attempts: {e.last_error}",
                alias=alias,
                attempts=e.attempts,
            )
            logger.error("%s", fatal)
            if self.log is not None:
                self.log.event("config_store.unload_fatal", alias=alias, attempts=e.attempts)
            if self.on_fatal is not None:
                try:
                    fatal.diagnostics = self.on_fatal(h, fatal)
                except Exception:
                    logger.exception("Diagnostics hook failed for %s", alias)
            raise fatal from e.last_error

        h.state = HandleState.UNLOADED
        self.registry.remove(alias)
        if h.session is not None and h in h.session.config_handles:
            h.session.config_handles.remove(h)
        logger.info("Unloaded config store %s", alias)
        if self.log is not None:
            self.log.event("config_store.unloaded", alias=alias, elapsed=round(time.monotonic() - started, 3))

    @contextmanager
    def loaded(self, alias: str, backing_file: str | Path, *, session: Any) -> Iterator[ConfigStoreHandle]:
        """Load for the duration of the block; the unload always runs."""

        handle = self.load(alias, backing_file, session=session)
        try:
            yield handle
        finally:
            self.unload(handle)


def make_backend(kind: str, *, timeout: float = 120.0) -> ConfigStoreBackend:
    if kind == "reg":
        return RegExeBackend(timeout=timeout)
    if kind == "yaml":
        return YamlHiveBackend()
    raise ValidationFailure(f"Unknown config store backend {kind!r} (expected one of {sorted(BACKENDS)})")
