from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Sequence

import psutil

from ..errors import ImageBuildError, OperationTimeout

logger = logging.getLogger(__name__)

# Granularity of the wait loop; bounds how late a cancel or deadline is noticed.
POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class ExternalOperationResult:
    argv: list[str]
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return (not self.timed_out) and self.exit_code == 0


@dataclass(frozen=True)
class TimeoutProfile:
    """Timeouts (seconds) for every externally delegated operation."""

    name: str
    mount: float
    commit: float
    optimize: float
    package: float
    install: float
    config_store: float

    def with_overrides(self, overrides: Mapping[str, Any] | None) -> "TimeoutProfile":
        if not overrides:
            return self
        known = {f.name for f in fields(self)} - {"name"}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown timeout keys: {', '.join(sorted(unknown))}")
        return replace(self, **{k: float(v) for k, v in overrides.items()})


# Commit/dismount time grows with artifact size, so the profiles differ mostly there.
PROFILES = {
    "small": TimeoutProfile(
        name="small",
        mount=600.0,
        commit=1800.0,
        optimize=1800.0,
        package=1800.0,
        install=600.0,
        config_store=120.0,
    ),
    "large": TimeoutProfile(
        name="large",
        mount=1800.0,
        commit=7200.0,
        optimize=7200.0,
        package=3600.0,
        install=1200.0,
        config_store=300.0,
    ),
}


def get_profile(name: str) -> TimeoutProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown timeout profile {name!r} (expected one of {sorted(PROFILES)})") from None


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def kill_process_tree(pid: int, *, wait: float = 5.0) -> None:
    """Kill a process and every descendant, then reap what we can."""

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    procs = parent.children(recursive=True)
    procs.append(parent)
    for p in procs:
        try:
            p.kill()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=wait)
    for p in alive:
        logger.warning("Process %s survived kill", p.pid)


def run_operation(
    argv: Sequence[str],
    *,
    timeout: float,
    cancel_event: threading.Event | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> ExternalOperationResult:
    """Run an external operation with a hard timeout.

    - Always logs the command.
    - On timeout (or when cancel_event is set) the whole process tree is
      killed and the result carries timed_out=True and no exit code.
    - Never blocks past timeout plus the kill grace period.
    """

    argv_list = list(argv)
    logger.info("CMD %s (timeout=%.0fs)", _fmt_argv(argv_list), timeout)

    started = time.monotonic()
    deadline = started + timeout

    p = subprocess.Popen(
        argv_list,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=cwd,
        env=dict(os.environ, **(env or {})),
        start_new_session=True,
    )

    pending_input = input_text
    while True:
        remaining = deadline - time.monotonic()
        cancelled = cancel_event is not None and cancel_event.is_set()
        if remaining <= 0 or cancelled:
            break
        try:
            stdout, stderr = p.communicate(input=pending_input, timeout=min(POLL_INTERVAL, remaining))
        except subprocess.TimeoutExpired:
            pending_input = None
            continue

        elapsed = time.monotonic() - started
        if stdout:
            logger.debug("STDOUT %s", stdout.strip())
        if stderr:
            logger.debug("STDERR %s", stderr.strip())
        return ExternalOperationResult(
            argv=argv_list,
            exit_code=p.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            elapsed=elapsed,
        )

    reason = "cancelled" if (cancel_event is not None and cancel_event.is_set()) else "timed out"
    logger.error("CMD %s after %.1fs: %s", reason, time.monotonic() - started, _fmt_argv(argv_list))
    kill_process_tree(p.pid)
    try:
        stdout, stderr = p.communicate(timeout=5.0)
    except subprocess.TimeoutExpired:
        # A stray descendant outside the tree still holds the pipes.
        p.kill()
        stdout, stderr = "", ""

    return ExternalOperationResult(
        argv=argv_list,
        exit_code=None,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=True,
        elapsed=time.monotonic() - started,
    )


def run_checked(
    argv: Sequence[str],
    *,
    timeout: float,
    cancel_event: threading.Event | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> ExternalOperationResult:
    """run_operation, raising on timeout or non-zero exit."""

    r = run_operation(argv, timeout=timeout, cancel_event=cancel_event, env=env, cwd=cwd, input_text=input_text)
    if r.timed_out:
        raise OperationTimeout(f"Command exceeded {timeout:.0f}s: {_fmt_argv(r.argv)}")
    if r.exit_code != 0:
        raise ImageBuildError(f"Command failed ({r.exit_code}): {_fmt_argv(r.argv)}\n{r.stderr}")
    return r
