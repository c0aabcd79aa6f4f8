"""Failure diagnostics captured from the still-mounted image.

Runs before cleanup, so the mounted tree and any attached config store are
still there to inspect. Everything here is best-effort: an artifact that
cannot be collected becomes a warning in the bundle summary.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import psutil
import yaml

from .config_store import ConfigStorePatcher
from .errors import error_kind
from .lib.paths import MountedTree
from .logging_utils import BuildLog

logger = logging.getLogger(__name__)

DEFAULT_LOG_PATTERNS = (
    "Windows/Logs/**/*.log",
    "Windows/Panther/*.log",
    "Windows/INF/setupapi*.log",
    "var/log/**/*.log",
)
DEFAULT_CONFIG_PATTERNS = (
    "Windows/Panther/unattend.xml",
    "Windows/System32/startnet.cmd",
    "Windows/System32/winpeshl.ini",
    "etc/*.conf",
)
DEFAULT_MAX_FILES = 200
DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_LISTING_ENTRIES = 20000

SUBDIRS = ("Logs", "Config", "StoreExport", "FileSystem")


@dataclass(frozen=True)
class StoreExport:
    alias: str
    hive: str


@dataclass
class DiagnosticsBundle:
    path: Path
    collected_at: datetime
    artifacts: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class DiagnosticsCollector:
    def __init__(
        self,
        root: str | Path,
        *,
        log: Optional[BuildLog] = None,
        patcher: Optional[ConfigStorePatcher] = None,
        host_logs: Sequence[str | Path] = (),
        log_patterns: Sequence[str] = DEFAULT_LOG_PATTERNS,
        config_patterns: Sequence[str] = DEFAULT_CONFIG_PATTERNS,
        store_exports: Sequence[StoreExport] = (),
        max_files: int = DEFAULT_MAX_FILES,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        max_listing_entries: int = DEFAULT_MAX_LISTING_ENTRIES,
    ) -> None:
        self.root = Path(root)
        self.log = log
        self.patcher = patcher
        self.host_logs = [Path(p) for p in host_logs]
        self.log_patterns = tuple(log_patterns)
        self.config_patterns = tuple(config_patterns)
        self.store_exports = tuple(store_exports)
        self.max_files = max_files
        self.max_file_bytes = max_file_bytes
        self.max_listing_entries = max_listing_entries
        self._collecting = False

    def collect(
        self,
        *,
        reason: str,
        session: Any = None,
        error: Optional[BaseException] = None,
        stage: Optional[str] = None,
    ) -> Optional[DiagnosticsBundle]:
        if self._collecting:
            # A failure inside collection (e.g. a store export that cannot unload) re-enters here.
            logger.debug("Diagnostics already being collected; skipping nested request (%s)", reason)
            return None

        self._collecting = True
        try:
            bundle = self._new_bundle()
            logger.warning("Collecting diagnostics into %s (%s)", bundle.path, reason)
            self._guard(bundle, "host logs", lambda: self._host_logs(bundle))
            self._guard(bundle, "build events", lambda: self._events(bundle))
            if session is not None and Path(session.mount_path).is_dir():
                tree = MountedTree.from_path(session.mount_path)
                self._guard(bundle, "image logs", lambda: self._patterns(bundle, tree, self.log_patterns, "Logs"))
                self._guard(bundle, "image config", lambda: self._patterns(bundle, tree, self.config_patterns, "Config"))
                for export in self.store_exports:
                    self._guard(bundle, f"store export {export.alias}", lambda e=export: self._store_export(bundle, tree, session, e))
                self._guard(bundle, "filesystem listing", lambda: self._listing(bundle, tree))
            self._guard(bundle, "system info", lambda: self._summary(bundle, reason, session, error, stage))
        except OSError as e:
            logger.warning("Diagnostics bundle could not be created under %s: %s", self.root, e)
            return None
        finally:
            self._collecting = False

        if self.log is not None:
            self.log.event(
                "diagnostics.collected",
                path=str(bundle.path),
                artifacts=len(bundle.artifacts),
                warnings=len(bundle.warnings),
                reason=reason,
            )
        return bundle

    def _new_bundle(self) -> DiagnosticsBundle:
        now = datetime.now(timezone.utc)
        base = self.root / f"Diagnostics_{now.strftime('%Y%m%d-%H%M%S')}"
        path = base
        n = 1
        while path.exists():
            n += 1
            path = base.with_name(f"{base.name}_{n}")
        for sub in SUBDIRS:
            (path / sub).mkdir(parents=True, exist_ok=True)
        return DiagnosticsBundle(path=path, collected_at=now)

    def _guard(self, bundle: DiagnosticsBundle, what: str, fn) -> None:
        try:
            fn()
        except Exception as e:
            msg = f"{what}: {e}"
            logger.warning("Diagnostics: could not collect %s", msg)
            bundle.warnings.append(msg)

    def _room(self, bundle: DiagnosticsBundle) -> bool:
        if len(bundle.artifacts) >= self.max_files:
            msg = f"file limit ({self.max_files}) reached"
            if msg not in bundle.warnings:
                bundle.warnings.append(msg)
            return False
        return True

    def _copy_bounded(self, bundle: DiagnosticsBundle, src: Path, dst: Path) -> None:
        dst.parent.mkdir(parents=True, exist_ok=True)
        size = src.stat().st_size
        if size <= self.max_file_bytes:
            shutil.copy2(src, dst)
        else:
            # Keep the tail; the end of a log is where the failure is.
            with src.open("rb") as f:
                f.seek(size - self.max_file_bytes)
                data = f.read()
            dst.write_bytes(b"[truncated to last %d bytes]\n" % self.max_file_bytes + data)
        bundle.artifacts.append(dst)

    def _host_logs(self, bundle: DiagnosticsBundle) -> None:
        for p in self.host_logs:
            if p.is_file() and self._room(bundle):
                self._copy_bounded(bundle, p, bundle.path / "Logs" / "Host" / p.name)

    def _events(self, bundle: DiagnosticsBundle) -> None:
        if self.log is None:
            return
        dst = bundle.path / "Logs" / "build-events.jsonl"
        with dst.open("w", encoding="utf-8") as f:
            for e in self.log.pending:
                f.write(json.dumps(e, sort_keys=True, default=str) + "\n")
        bundle.artifacts.append(dst)

    def _patterns(self, bundle: DiagnosticsBundle, tree: MountedTree, patterns: Sequence[str], sub: str) -> None:
        for pattern in patterns:
            for src in sorted(tree.root.glob(pattern)):
                if not src.is_file() or src.is_symlink():
                    continue
                if not self._room(bundle):
                    return
                rel = src.relative_to(tree.root)
                try:
                    self._copy_bounded(bundle, src, bundle.path / sub / "Image" / rel)
                except OSError as e:
                    bundle.warnings.append(f"{sub} {rel}: {e}")
                    logger.warning("Diagnostics: could not copy %s: %s", rel, e)

    def _store_export(self, bundle: DiagnosticsBundle, tree: MountedTree, session: Any, export: StoreExport) -> None:
        if self.patcher is None:
            return
        dest = bundle.path / "StoreExport" / f"{export.alias}.export"
        if self.patcher.is_loaded(export.alias):
            self.patcher.export(export.alias, dest)
        elif session.live:
            # Same load/unload discipline (and unload retry) as a mutation step.
            with self.patcher.loaded(export.alias, tree.resolve_rel(export.hive), session=session):
                self.patcher.export(export.alias, dest)
        else:
            bundle.warnings.append(f"store export {export.alias}: session not mounted")
            return
        bundle.artifacts.append(dest)

    def _listing(self, bundle: DiagnosticsBundle, tree: MountedTree) -> None:
        dst = bundle.path / "FileSystem" / "listing.txt"
        count = 0
        truncated = False
        with dst.open("w", encoding="utf-8") as f:
            for dirpath, dirnames, filenames in os.walk(tree.root):
                dirnames.sort()
                for name in sorted(filenames):
                    if count >= self.max_listing_entries:
                        truncated = True
                        break
                    p = Path(dirpath) / name
                    try:
                        st = p.lstat()
                        f.write(f"{st.st_size}\t{int(st.st_mtime)}\t{p.relative_to(tree.root).as_posix()}\n")
                    except OSError as e:
                        f.write(f"?\t?\t{p.relative_to(tree.root).as_posix()}\t({e})\n")
                    count += 1
                if truncated:
                    f.write(f"[listing truncated at {self.max_listing_entries} entries]\n")
                    break
        bundle.artifacts.append(dst)

    def _summary(
        self,
        bundle: DiagnosticsBundle,
        reason: str,
        session: Any,
        error: Optional[BaseException],
        stage: Optional[str],
    ) -> None:
        info: Dict[str, Any] = {
            "reason": reason,
            "stage": stage,
            "collected_at": bundle.collected_at.isoformat(),
            "error": str(error) if error is not None else None,
            "error_kind": error_kind(error).value if error is not None else None,
            "host": {
                "platform": platform.platform(),
                "python": platform.python_version(),
                "pid": os.getpid(),
                "cpu_count": psutil.cpu_count(),
                "memory_available": psutil.virtual_memory().available,
            },
        }
        if session is not None:
            info["session"] = {
                "artifact": str(session.artifact_path),
                "working_copy": str(session.working_copy_path),
                "mount": str(session.mount_path),
                "index": session.image_index,
                "state": session.state.value,
                "acquired_at": session.acquired_at.isoformat(),
                "config_stores": [
                    {"alias": h.alias, "state": h.state.value} for h in session.config_handles
                ],
            }
            try:
                info["host"]["work_area_free"] = psutil.disk_usage(str(session.work_area)).free
            except OSError:
                pass
        if self.patcher is not None:
            info["loaded_config_stores"] = self.patcher.registry.aliases()
        info["artifacts"] = [str(p.relative_to(bundle.path)) for p in bundle.artifacts]
        info["warnings"] = list(bundle.warnings)

        dst = bundle.path / "SystemInfo.txt"
        dst.write_text(yaml.safe_dump(info, sort_keys=False), encoding="utf-8")
        bundle.artifacts.append(dst)
