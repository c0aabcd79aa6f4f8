from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .build_config import BuildConfig
from .checkpoints import CheckpointStore
from .config_store import ConfigStoreBackend, ConfigStoreHandle, ConfigStorePatcher, make_backend
from .dependencies import DependencyReport, DependencyRepository, install_dependencies, make_repository
from .diagnostics import DiagnosticsBundle, DiagnosticsCollector
from .errors import (
    ConfigStoreFatal,
    ImageBuildError,
    MissingPrerequisite,
    OperationTimeout,
    StepFailed,
    ValidationFailure,
)
from .lib.toolkit import ImagingToolkit, get_toolkit
from .logging_utils import BuildLog
from .pipeline import MutationContext, run_pipeline
from .preflight import check_free_space, run_preflight
from .session import FINAL_STATES, MountSession, MountSessionManager
from .steps import InjectContentStep, build_mutation_steps

logger = logging.getLogger(__name__)

STAGES = ("preflight", "dependencies", "customize", "optimize", "package")
# Stages whose checks run again on every resume.
RECHECKED_STAGES = ("preflight",)


def new_build_id() -> str:
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


@dataclass
class BuildResult:
    build_id: str
    ran_stages: List[str] = field(default_factory=list)
    skipped_stages: List[str] = field(default_factory=list)
    dependency_report: Optional[DependencyReport] = None
    diagnostics: List[DiagnosticsBundle] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)


def write_sha256sums(path: Path) -> str:
    """Hash path and record it in SHA256SUMS beside it, replacing any older line."""

    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    digest = h.hexdigest()

    sums = path.parent / "SHA256SUMS"
    lines = []
    if sums.exists():
        lines = [ln for ln in sums.read_text(encoding="utf-8").splitlines() if ln and not ln.endswith(f"  {path.name}")]
    lines.append(f"{digest}  {path.name}")
    sums.write_text("\n".join(sorted(lines, key=lambda ln: ln.split("  ", 1)[-1])) + "\n", encoding="utf-8")
    return digest


class BuildOrchestrator:
    """Runs one build: preflight, dependencies, customize, optimize, package.

    Stages run one after another on the calling thread. Each completed stage
    is checkpointed; a resumed build skips the stages its checkpoints show,
    except pre-flight, whose checks always run again before anything else.
    """

    def __init__(
        self,
        cfg: BuildConfig,
        *,
        build_id: Optional[str] = None,
        resume: bool = False,
        log: Optional[BuildLog] = None,
        log_path: Optional[str] = None,
        toolkit: Optional[ImagingToolkit] = None,
        backend: Optional[ConfigStoreBackend] = None,
        repository: Optional[DependencyRepository] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.build_id = build_id or new_build_id()
        self.resume = resume
        self.log = log or BuildLog(self.build_id, events_path=cfg.events_path)
        self.timeouts = cfg.timeouts
        self.toolkit = toolkit or get_toolkit(cfg.toolkit)
        self.steps = build_mutation_steps(cfg.mutations, base_dir=cfg.base_dir)
        self._repository = repository
        self._stage: Optional[str] = None
        self.session: Optional[MountSession] = None
        self.result = BuildResult(build_id=self.build_id)

        cs = cfg.config_store
        self.patcher = ConfigStorePatcher(
            backend or make_backend(cs["backend"], timeout=self.timeouts.config_store),
            log=self.log,
            unload_attempts=cs["unload_attempts"],
            unload_backoff=cs["unload_backoff"],
            settle_delay=cs["settle_delay"],
            sleep=sleep,
            on_fatal=self._on_store_fatal,
        )
        self.sessions = MountSessionManager(
            self.toolkit,
            log=self.log,
            timeouts=self.timeouts,
            mount_retries=cfg.mount_retries,
            mount_retry_delay=cfg.mount_retry_delay,
            sleep=sleep,
        )
        diag = cfg.diagnostics
        self.diagnostics = DiagnosticsCollector(
            diag["root"],
            log=self.log,
            patcher=self.patcher,
            host_logs=[log_path] if log_path else (),
            log_patterns=diag["log_patterns"],
            config_patterns=diag["config_patterns"],
            store_exports=diag["store_exports"],
            max_files=diag["max_files"],
            max_file_bytes=diag["max_file_bytes"],
            max_listing_entries=diag["max_listing_entries"],
        )
        self.checkpoints = CheckpointStore(cfg.checkpoint_path, stage_order=STAGES)

    def _collect(self, *, reason: str, session: Any = None, error: Optional[BaseException] = None) -> Optional[DiagnosticsBundle]:
        bundle = self.diagnostics.collect(reason=reason, session=session, error=error, stage=self._stage)
        if bundle is not None:
            self.result.diagnostics.append(bundle)
        return bundle

    def _on_store_fatal(self, handle: ConfigStoreHandle, err: ConfigStoreFatal) -> Optional[DiagnosticsBundle]:
        return self._collect(reason=f"config store {handle.alias} could not be unloaded", session=handle.session, error=err)

    def run(self) -> BuildResult:
        done = set(self.checkpoints.completed_stages(self.build_id)) if self.resume else set()
        if done:
            logger.info("Resuming build %s; completed stages: %s", self.build_id, ", ".join(sorted(done)))

        try:
            for stage in STAGES:
                if stage in done and stage not in RECHECKED_STAGES:
                    logger.info("[%s] skip %s (checkpointed)", self.build_id, stage)
                    self.result.skipped_stages.append(stage)
                    continue

                self._stage = stage
                logger.info("=== Stage: %s ===", stage)
                started = time.monotonic()
                try:
                    with self.log.timed("stage", stage):
                        data = getattr(self, f"_stage_{stage}")()
                except Exception as e:
                    self.log.failure(stage, time.monotonic() - started, e)
                    raise
                if stage not in done:
                    self.checkpoints.append(self.build_id, stage, data)
                self.result.ran_stages.append(stage)
            return self.result
        finally:
            # Whatever happened above, a live session never outlives the build.
            if self.session is not None and self.session.state not in FINAL_STATES:
                self.sessions.release(self.session, commit=False)
            self._stage = None
            self.log.flush()

    def _stage_preflight(self) -> Dict[str, Any]:
        for step in self.steps:
            if isinstance(step, InjectContentStep) and not step.source.exists():
                raise ValidationFailure(f"Mutation {step.name}: source not found: {step.source}")

        pf = self.cfg.preflight
        report = run_preflight(
            artifact=self.cfg.artifact,
            work_dir=self.cfg.work_dir,
            suffixes=self.toolkit.suffixes,
            required_tools=tuple(self.toolkit.required_tools) + tuple(pf["required_tools"]),
            require_root=pf["require_root"],
            space_factor=pf["space_factor"],
            min_free_bytes=pf["min_free_bytes"],
            package_destination=self.cfg.package_destination,
        )
        return {"artifact_bytes": report.artifact_bytes, "free_bytes": report.free_bytes}

    def _stage_dependencies(self) -> Dict[str, Any]:
        specs = self.cfg.dependencies
        if not specs:
            return {"items": 0}
        repository = self._repository or make_repository(self.cfg.dependency_repository, timeout=self.timeouts.install)
        report = install_dependencies(
            specs,
            repository,
            throttle=self.cfg.dependency_throttle,
            batch_timeout=self.cfg.dependency_batch_timeout,
            policy=self.cfg.integrity,
            log=self.log,
        )
        self.result.dependency_report = report
        blocking = report.blocking
        if blocking:
            names = ", ".join(f"{r.spec.name} ({r.state.value}: {r.reason})" for r in blocking)
            raise MissingPrerequisite(f"Required dependencies unavailable: {names}")
        return {"items": len(report.results), "results": report.as_dict()}

    def _stage_customize(self) -> Dict[str, Any]:
        try:
            self.session = self.sessions.acquire(self.cfg.artifact, self.cfg.work_dir, index=self.cfg.image_index)
            ctx = MutationContext(session=self.session, patcher=self.patcher, log=self.log)
            pr = run_pipeline(ctx=ctx, steps=self.steps, sessions=self.sessions, collect_diagnostics=self._collect)
            self.sessions.release(self.session, commit=True)
        except StepFailed:
            # The pipeline already captured diagnostics and discarded the session.
            raise
        except Exception as e:
            if getattr(e, "diagnostics", None) is None:
                self._collect(reason=f"customize failed: {e}", session=self.session, error=e)
            raise
        return {"steps": pr.ran_steps, "elapsed": round(pr.elapsed, 3)}

    def _run_toolkit(self, options: Dict[str, Any], *, timeout: float, what: str) -> None:
        r = self.toolkit.optimize_or_export(self.cfg.artifact, options, timeout=timeout)
        if r.timed_out:
            raise OperationTimeout(f"{what} exceeded {timeout:.0f}s")
        if r.exit_code != 0:
            raise ImageBuildError(f"{what} failed ({r.exit_code}): {r.stderr.strip()}")

    def _stage_optimize(self) -> Dict[str, Any]:
        options = self.cfg.optimize
        if options is None:
            return {"skipped": True}
        self._run_toolkit(options, timeout=self.timeouts.optimize, what="optimize")
        return {"options": options}

    def _stage_package(self) -> Dict[str, Any]:
        dest = self.cfg.package_destination
        if dest is None:
            return {"skipped": True}
        size = self.cfg.artifact.stat().st_size
        check_free_space(dest.parent, size + self.cfg.preflight["min_free_bytes"], what="packaging")
        self._run_toolkit(
            {**self.cfg.package_options, "destination": str(dest)},
            timeout=self.timeouts.package,
            what="package",
        )
        digest = write_sha256sums(dest)
        self.result.outputs["package"] = str(dest)
        logger.info("Packaged %s (sha256 %s)", dest, digest)
        return {"destination": str(dest), "sha256": digest}
