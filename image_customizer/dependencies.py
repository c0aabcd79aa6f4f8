"""Host-side dependencies a build needs (tool modules, helper packages).

Installed best-effort in parallel: every item gets a verdict, one failed
item never stops the others, and the batch as a whole is time-boxed.
Workers never touch the mounted image.
"""

from __future__ import annotations

import hashlib
import logging
import re
import sys
import tempfile
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import ImageBuildError, IntegrityMismatch, OperationTimeout, ValidationFailure
from .lib.batch import DEFAULT_THROTTLE, run_batch
from .lib.command import run_operation
from .logging_utils import BuildLog

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class DependencyState(str, Enum):
    ALREADY_PRESENT = "already_present"
    INSTALLED = "installed"
    UPDATED = "updated"
    FAILED = "failed"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class DependencySpec:
    name: str
    version: Optional[str] = None
    sha256: Optional[str] = None
    optional: bool = False


def parse_dependency_specs(raw: Any) -> Tuple[DependencySpec, ...]:
    """Validate the ``dependencies.items`` config section once, up front."""

    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationFailure("dependencies.items must be a list")

    specs: List[DependencySpec] = []
    seen: set[str] = set()
    for i, item in enumerate(raw):
        if isinstance(item, str):
            item = {"name": item}
        if not isinstance(item, dict):
            raise ValidationFailure(f"dependencies.items[{i}] must be a name or a mapping")
        name = str(item.get("name") or "").strip()
        if not _NAME_RE.match(name):
            raise ValidationFailure(f"dependencies.items[{i}]: invalid name {name!r}")
        if name.lower() in seen:
            raise ValidationFailure(f"Duplicate dependency: {name}")
        seen.add(name.lower())
        sha = item.get("sha256")
        if sha is not None:
            sha = str(sha).strip().lower()
            if not _SHA256_RE.match(sha):
                raise ValidationFailure(f"dependencies.items[{i}]: sha256 must be 64 hex chars")
        version = item.get("version")
        specs.append(
            DependencySpec(
                name=name,
                version=str(version) if version is not None else None,
                sha256=sha,
                optional=bool(item.get("optional", False)),
            )
        )
    return tuple(specs)


@dataclass(frozen=True)
class IntegrityPolicy:
    """How fetched units are verified before they are installed.

    verify: compare against the item's sha256 when one is given.
    require_hash: fail items that carry no sha256.
    allow_mismatch: log a mismatch instead of failing the item.
    """

    verify: bool = True
    require_hash: bool = False
    allow_mismatch: bool = False

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "IntegrityPolicy":
        raw = raw or {}
        return cls(
            verify=bool(raw.get("verify", True)),
            require_hash=bool(raw.get("require_hash", False)),
            allow_mismatch=bool(raw.get("allow_mismatch", False)),
        )


class DependencyRepository(Protocol):
    def installed_version(self, name: str, *, cancel_event: threading.Event) -> Optional[str]:
        ...

    def install(
        self,
        name: str,
        version: Optional[str],
        *,
        source: Optional[Path] = None,
        cancel_event: threading.Event,
    ) -> str:
        ...

    def download(self, name: str, version: Optional[str], dest_dir: Path, *, cancel_event: threading.Event) -> Path:
        ...


class PipRepository:
    """Python package index, driven through ``python -m pip``."""

    def __init__(self, *, python: str = sys.executable, timeout: float = 600.0, index_url: Optional[str] = None) -> None:
        self.python = python
        self.timeout = timeout
        self.index_url = index_url

    def _pip(self, *args: str, cancel_event: threading.Event):
        argv = [self.python, "-m", "pip", *args]
        if self.index_url and args[0] in {"install", "download"}:
            argv += ["--index-url", self.index_url]
        r = run_operation(argv, timeout=self.timeout, cancel_event=cancel_event)
        if r.timed_out:
            raise OperationTimeout(f"pip {args[0]} timed out")
        return r

    def installed_version(self, name: str, *, cancel_event: threading.Event) -> Optional[str]:
        r = self._pip("show", name, cancel_event=cancel_event)
        if r.exit_code != 0:
            return None
        for line in r.stdout.splitlines():
            if line.lower().startswith("version:"):
                return line.split(":", 1)[1].strip()
        return None

    def install(
        self,
        name: str,
        version: Optional[str],
        *,
        source: Optional[Path] = None,
        cancel_event: threading.Event,
    ) -> str:
        target = str(source) if source else (f"{name}=={version}" if version else name)
        r = self._pip("install", "--disable-pip-version-check", target, cancel_event=cancel_event)
        if r.exit_code != 0:
            raise ImageBuildError(f"pip install {target} failed ({r.exit_code}): {r.stderr.strip()[-500:]}")
        return self.installed_version(name, cancel_event=cancel_event) or (version or "")

    def download(self, name: str, version: Optional[str], dest_dir: Path, *, cancel_event: threading.Event) -> Path:
        req = f"{name}=={version}" if version else name
        r = self._pip("download", "--no-deps", "-d", str(dest_dir), req, cancel_event=cancel_event)
        if r.exit_code != 0:
            raise ImageBuildError(f"pip download {req} failed ({r.exit_code}): {r.stderr.strip()[-500:]}")
        files = sorted(p for p in dest_dir.iterdir() if p.is_file())
        if len(files) != 1:
            raise ImageBuildError(f"pip download {req} produced {len(files)} files, expected 1")
        return files[0]


REPOSITORIES = {
    "pip": PipRepository,
}


@dataclass(frozen=True)
class DependencyResult:
    spec: DependencySpec
    state: DependencyState
    reason: str = ""
    installed_version: Optional[str] = None
    elapsed: float = 0.0


@dataclass(frozen=True)
class DependencyReport:
    results: Tuple[DependencyResult, ...] = field(default_factory=tuple)

    def by_state(self, state: DependencyState) -> List[DependencyResult]:
        return [r for r in self.results if r.state == state]

    @property
    def blocking(self) -> List[DependencyResult]:
        """Required items that did not end up present."""

        bad = {DependencyState.FAILED, DependencyState.INCOMPLETE}
        return [r for r in self.results if r.state in bad and not r.spec.optional]

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            r.spec.name: {
                "state": r.state.value,
                "reason": r.reason,
                "version": r.installed_version,
                "elapsed": round(r.elapsed, 3),
            }
            for r in self.results
        }


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _fetch_verified(
    spec: DependencySpec,
    repository: DependencyRepository,
    policy: IntegrityPolicy,
    dest_dir: Path,
    cancel_event: threading.Event,
) -> Optional[Path]:
    if not spec.sha256:
        if policy.require_hash:
            raise IntegrityMismatch(f"{spec.name}: no sha256 configured and the integrity policy requires one")
        return None
    if not policy.verify:
        return None

    unit = repository.download(spec.name, spec.version, dest_dir, cancel_event=cancel_event)
    actual = sha256_file(unit)
    if actual != spec.sha256:
        msg = f"{spec.name}: sha256 mismatch for {unit.name} (expected {spec.sha256}, got {actual})"
        if not policy.allow_mismatch:
            raise IntegrityMismatch(msg)
        logger.warning("%s; installing anyway (allow_mismatch)", msg)
    return unit


def resolve_dependency(
    spec: DependencySpec,
    repository: DependencyRepository,
    *,
    policy: IntegrityPolicy = IntegrityPolicy(),
    cancel_event: Optional[threading.Event] = None,
) -> DependencyResult:
    cancel_event = cancel_event or threading.Event()
    current = repository.installed_version(spec.name, cancel_event=cancel_event)

    if current is not None and (spec.version is None or current == spec.version):
        return DependencyResult(spec=spec, state=DependencyState.ALREADY_PRESENT, installed_version=current)

    with tempfile.TemporaryDirectory(prefix=f"dep-{spec.name}-") as tmp:
        source = _fetch_verified(spec, repository, policy, Path(tmp), cancel_event)
        version = repository.install(spec.name, spec.version, source=source, cancel_event=cancel_event)

    if current is None:
        return DependencyResult(spec=spec, state=DependencyState.INSTALLED, installed_version=version)
    return DependencyResult(
        spec=spec,
        state=DependencyState.UPDATED,
        reason=f"{current} -> {spec.version}",
        installed_version=version,
    )


def install_dependencies(
    specs: Sequence[DependencySpec],
    repository: DependencyRepository,
    *,
    throttle: int = DEFAULT_THROTTLE,
    batch_timeout: Optional[float] = None,
    policy: IntegrityPolicy = IntegrityPolicy(),
    log: Optional[BuildLog] = None,
) -> DependencyReport:
    """Resolve every spec under a bounded worker pool and report per item."""

    def work(spec: DependencySpec, cancel_event: threading.Event) -> DependencyResult:
        return resolve_dependency(spec, repository, policy=policy, cancel_event=cancel_event)

    outcomes = run_batch(list(specs), work, throttle=throttle, batch_timeout=batch_timeout)

    results: List[DependencyResult] = []
    for o in outcomes:
        if o.incomplete:
            r = DependencyResult(spec=o.item, state=DependencyState.INCOMPLETE, reason="batch timeout")
        elif not o.ok:
            r = DependencyResult(spec=o.item, state=DependencyState.FAILED, reason=str(o.error), elapsed=o.elapsed)
        else:
            r = replace(o.value, elapsed=o.elapsed)
        results.append(r)

        level = logging.WARNING if r.state in {DependencyState.FAILED, DependencyState.INCOMPLETE} else logging.INFO
        logger.log(level, "Dependency %s: %s %s", r.spec.name, r.state.value, r.reason)
        if log is not None:
            log.event("dependency.result", name=r.spec.name, state=r.state.value, reason=r.reason, elapsed=round(r.elapsed, 3))

    return DependencyReport(results=tuple(results))


def make_repository(raw: Mapping[str, Any], *, timeout: float) -> DependencyRepository:
    kind = str(raw.get("kind") or "pip")
    if kind not in REPOSITORIES:
        raise ValidationFailure(f"Unknown dependency repository {kind!r} (expected one of {sorted(REPOSITORIES)})")
    return PipRepository(
        python=str(raw.get("python") or sys.executable),
        timeout=timeout,
        index_url=raw.get("index_url"),
    )
