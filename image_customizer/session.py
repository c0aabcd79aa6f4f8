from __future__ import annotations

import logging
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from .errors import (
    ImageBuildError,
    MountError,
    OperationTimeout,
    RetryExhausted,
    SessionBusy,
    SessionStateError,
    ValidationFailure,
)
from .lib.command import PROFILES, TimeoutProfile
from .lib.toolkit import ImagingToolkit
from .logging_utils import BuildLog
from .retry import FixedBackoff, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_MOUNT_RETRIES = 2
DEFAULT_MOUNT_RETRY_DELAY = 5.0


class SessionState(str, Enum):
    UNMOUNTED = "unmounted"
    MOUNTED = "mounted"
    MODIFIED = "modified"
    COMMITTING = "committing"
    COMMITTED = "committed"
    DISCARDED = "discarded"
    FAILED = "failed"


LIVE_STATES = {SessionState.MOUNTED, SessionState.MODIFIED}
FINAL_STATES = {SessionState.COMMITTED, SessionState.DISCARDED}


@dataclass
class MountSession:
    artifact_path: Path
    working_copy_path: Path
    mount_path: Path
    image_index: int
    work_area: Path
    state: SessionState = SessionState.UNMOUNTED
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    handle: Optional[str] = None
    config_handles: List[Any] = field(default_factory=list)
    preserve_working_copy: bool = False

    @property
    def live(self) -> bool:
        return self.state in LIVE_STATES

    def outstanding_handles(self) -> List[Any]:
        return [h for h in self.config_handles if h.state.value != "unloaded"]


def _lock_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + ".lock")


def _lock_owner(lock: Path) -> Optional[int]:
    try:
        return int(lock.read_text(encoding="utf-8").strip() or "0") or None
    except (OSError, ValueError):
        return None


def _take_lock(lock: Path) -> None:
    for _ in range(2):
        try:
            fd = os.open(str(lock), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            owner = _lock_owner(lock)
            if owner is not None and psutil.pid_exists(owner):
                raise SessionBusy(f"{lock.name[:-5]} is mounted by pid {owner}") from None
            logger.warning("Removing stale session lock %s (owner=%s)", lock, owner)
            lock.unlink(missing_ok=True)
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{os.getpid()}\n")
        return
    raise SessionBusy(f"Could not take session lock {lock}")


class MountSessionManager:
    """Acquire and release exclusive mount sessions over image artifacts.

    The canonical artifact is never written in place: every session works on
    a copy and only a successful commit swaps that copy over the original.
    """

    def __init__(
        self,
        toolkit: ImagingToolkit,
        *,
        log: Optional[BuildLog] = None,
        timeouts: TimeoutProfile = PROFILES["small"],
        mount_retries: int = DEFAULT_MOUNT_RETRIES,
        mount_retry_delay: float = DEFAULT_MOUNT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.toolkit = toolkit
        self.log = log
        self.timeouts = timeouts
        self.mount_retries = mount_retries
        self.mount_retry_delay = mount_retry_delay
        self._sleep = sleep
        self._active: Dict[str, MountSession] = {}
        self._lock = threading.Lock()

    def _event(self, kind: str, session: MountSession, **fields: Any) -> None:
        if self.log is not None:
            self.log.event(kind, artifact=str(session.artifact_path), state=session.state.value, **fields)

    def active(self, artifact_path: str | Path) -> Optional[MountSession]:
        with self._lock:
            return self._active.get(str(Path(artifact_path).resolve()))

    def acquire(self, artifact_path: str | Path, work_dir: str | Path, *, index: int = 1) -> MountSession:
        artifact = Path(artifact_path).resolve()
        if not artifact.is_file():
            raise ValidationFailure(f"Image artifact not found: {artifact}")

        key = str(artifact)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        area = Path(work_dir).resolve() / f"session-{stamp}-{uuid.uuid4().hex[:8]}"

        with self._lock:
            if key in self._active:
                raise SessionBusy(f"{artifact.name} already has an active session")
            _take_lock(_lock_path(artifact))
            session = MountSession(
                artifact_path=artifact,
                working_copy_path=area / "image" / artifact.name,
                mount_path=area / "mount",
                image_index=index,
                work_area=area,
            )
            self._active[key] = session

        try:
            session.working_copy_path.parent.mkdir(parents=True, exist_ok=True)
            session.mount_path.mkdir(parents=True, exist_ok=True)
            logger.info("Copying %s -> %s", artifact, session.working_copy_path)
            shutil.copy2(artifact, session.working_copy_path)

            session.handle = retry_with_backoff(
                lambda: self.toolkit.mount(
                    session.working_copy_path, index, session.mount_path, timeout=self.timeouts.mount
                ),
                max_attempts=self.mount_retries + 1,
                backoff=FixedBackoff(self.mount_retry_delay),
                sleep=self._sleep,
                describe=f"mount {artifact.name}",
            )
        except RetryExhausted as e:
            self._abandon(session, remove_work_area=True)
            raise MountError(f"Could not mount {artifact.name}: {e.last_error}") from e.last_error
        except BaseException:
            self._abandon(session, remove_work_area=True)
            raise

        session.state = SessionState.MOUNTED
        logger.info("Mounted %s (index %d) at %s", artifact.name, index, session.mount_path)
        self._event("session.acquired", session, mount_path=str(session.mount_path))
        return session

    def mark_modified(self, session: MountSession) -> None:
        if session.state == SessionState.MOUNTED:
            session.state = SessionState.MODIFIED

    def release(self, session: MountSession, *, commit: bool) -> None:
        if session.state in FINAL_STATES:
            logger.debug("Session for %s already %s", session.artifact_path.name, session.state.value)
            return
        if commit:
            self._commit(session)
        else:
            self._discard(session)

    def _commit(self, session: MountSession) -> None:
        if session.state not in LIVE_STATES:
            raise SessionStateError(f"Cannot commit a session in state {session.state.value}")
        outstanding = session.outstanding_handles()
        if outstanding:
            aliases = ", ".join(h.alias for h in outstanding)
            raise SessionStateError(f"Cannot commit while config stores are attached: {aliases}")

        session.state = SessionState.COMMITTING
        self._event("session.committing", session)
        r = self.toolkit.dismount(str(session.handle), commit=True, timeout=self.timeouts.commit)

        if r.timed_out:
            session.state = SessionState.FAILED
            session.preserve_working_copy = True
            logger.error(
                "Commit of %s timed out after %.0fs; working copy kept at %s",
                session.artifact_path.name,
                r.elapsed,
                session.working_copy_path,
            )
            self._event("session.failed", session, reason="commit_timeout")
            self._forget(session)
            raise OperationTimeout(f"Commit of {session.artifact_path.name} exceeded {self.timeouts.commit:.0f}s")
        if r.exit_code != 0:
            session.state = SessionState.FAILED
            self._event("session.failed", session, reason="commit_failed", exit_code=r.exit_code)
            raise ImageBuildError(f"Commit of {session.artifact_path.name} failed ({r.exit_code}): {r.stderr.strip()}")

        session.handle = None
        self._swap_into_place(session)
        session.state = SessionState.COMMITTED
        logger.info("Committed %s", session.artifact_path)
        self._event("session.committed", session)
        self._abandon(session, remove_work_area=True)

    def _swap_into_place(self, session: MountSession) -> None:
        target = session.artifact_path
        try:
            os.replace(session.working_copy_path, target)
        except OSError:
            # Different filesystems: stage next to the target so the final step stays atomic.
            staged = target.with_name(target.name + ".incoming")
            shutil.copy2(session.working_copy_path, staged)
            os.replace(staged, target)

    def _discard(self, session: MountSession) -> None:
        if session.preserve_working_copy and session.handle is not None:
            # The mutated tree stays mounted for inspection.
            logger.warning(
                "Leaving %s mounted at %s for inspection", session.working_copy_path.name, session.mount_path
            )
            session.handle = None
        if session.handle is not None:
            try:
                r = self.toolkit.dismount(str(session.handle), commit=False, timeout=self.timeouts.commit)
                if not r.ok:
                    logger.warning(
                        "Discard dismount of %s did not complete cleanly (exit=%s timed_out=%s): %s",
                        session.artifact_path.name,
                        r.exit_code,
                        r.timed_out,
                        r.stderr.strip(),
                    )
            except Exception as e:
                logger.warning("Discard dismount of %s failed: %s", session.artifact_path.name, e)
            session.handle = None

        if session.state != SessionState.FAILED:
            session.state = SessionState.DISCARDED
        logger.info("Discarded session for %s", session.artifact_path.name)
        self._event("session.discarded", session)
        self._abandon(session, remove_work_area=not session.preserve_working_copy)

    def _forget(self, session: MountSession) -> None:
        with self._lock:
            if self._active.get(str(session.artifact_path)) is session:
                del self._active[str(session.artifact_path)]
                _lock_path(session.artifact_path).unlink(missing_ok=True)

    def _abandon(self, session: MountSession, *, remove_work_area: bool) -> None:
        self._forget(session)
        if remove_work_area and session.work_area.exists():
            try:
                shutil.rmtree(session.work_area)
            except OSError as e:
                logger.warning("Could not remove session work area %s: %s", session.work_area, e)
