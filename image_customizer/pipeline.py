from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .config_store import ConfigStorePatcher
from .errors import RetryExhausted, StepFailed, TransientResourceBusy
from .lib.paths import MountedTree
from .logging_utils import BuildLog
from .retry import FixedBackoff, retry_with_backoff
from .session import MountSession, MountSessionManager

logger = logging.getLogger(__name__)

DEFAULT_STEP_ATTEMPTS = 2
DEFAULT_STEP_RETRY_DELAY = 1.0


class MutationStep(Protocol):
    """A single edit applied to a mounted image."""

    name: str
    idempotent: bool

    def apply(self, ctx: "MutationContext") -> Any:
        ...


@dataclass
class MutationContext:
    session: MountSession
    patcher: ConfigStorePatcher
    log: BuildLog

    @property
    def tree(self) -> MountedTree:
        return MountedTree.from_path(self.session.mount_path)


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str]
    results: Dict[str, Any] = field(default_factory=dict)
    elapsed: float = 0.0


def run_pipeline(
    *,
    ctx: MutationContext,
    steps: Sequence[MutationStep],
    sessions: MountSessionManager,
    collect_diagnostics: Optional[Callable[..., Any]] = None,
    step_attempts: int = DEFAULT_STEP_ATTEMPTS,
    step_retry_delay: float = DEFAULT_STEP_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Apply steps to the mounted session strictly in the order given.

    The first failing step aborts the rest; diagnostics are captured from the
    still-mounted tree, then the session is discarded and StepFailed raised.
    """

    ran: List[str] = []
    results: Dict[str, Any] = {}
    started = time.monotonic()

    for step in steps:
        logger.info("Running mutation step %s", step.name)
        try:
            with ctx.log.timed("step", step.name, idempotent=bool(step.idempotent)):
                if step.idempotent:
                    result = retry_with_backoff(
                        lambda: step.apply(ctx),
                        max_attempts=step_attempts,
                        backoff=FixedBackoff(step_retry_delay),
                        retry_on=(TransientResourceBusy,),
                        sleep=sleep,
                        describe=f"step {step.name}",
                    )
                else:
                    result = step.apply(ctx)
        except Exception as e:
            cause = e.last_error if isinstance(e, RetryExhausted) and e.last_error is not None else e
            failure = StepFailed(step.name, cause)
            logger.error("Step %s failed after %d completed step(s): %s", step.name, len(ran), cause)
            try:
                if failure.diagnostics is None and collect_diagnostics is not None:
                    failure.diagnostics = collect_diagnostics(
                        reason=f"step {step.name} failed", session=ctx.session, error=cause
                    )
            finally:
                sessions.release(ctx.session, commit=False)
            raise failure from cause

        sessions.mark_modified(ctx.session)
        ran.append(step.name)
        results[step.name] = result

    return PipelineResult(ran_steps=ran, results=results, elapsed=time.monotonic() - started)
