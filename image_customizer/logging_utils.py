from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import error_kind

DEFAULT_LOG_PATH = "logs/image-customizer.log"
FALLBACK_LOG_NAME = "image-customizer.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


def _open_log_file(path: str) -> logging.FileHandler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Attach the build log handlers to the root logger, once per process.

    When ``log_path`` cannot be opened the log goes to ``image-customizer.log``
    in the working directory. Returns the file actually written; later calls
    return the same path without adding handlers.
    """

    root = logging.getLogger()
    root.setLevel(level)
    configured = getattr(root, "_image_customizer_log_path", None)
    if configured is not None:
        return configured

    try:
        file_handler = _open_log_file(log_path)
        actual = log_path
    except OSError:
        actual = str(Path.cwd() / FALLBACK_LOG_NAME)
        file_handler = _open_log_file(actual)

    handlers: List[logging.Handler] = [file_handler]
    if also_console:
        handlers.append(logging.StreamHandler())
    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    for h in handlers:
        h.setFormatter(fmt)
        root.addHandler(h)
    setattr(root, "_image_customizer_log_path", actual)

    log = logging.getLogger(__name__)
    if actual != log_path:
        log.warning("Cannot write %s; logging to %s instead", log_path, actual)
    log.info("Logging to %s", actual)
    return actual


class BuildLog:
    """Logging context handed to every component of one build.

    Text goes to the wrapped logger as usual. Structured events (step and
    stage timings, failures) are buffered in memory and only written to
    the events file by flush(), so a build can decide when its telemetry
    becomes durable.
    """

    def __init__(
        self,
        build_id: str,
        *,
        events_path: str | Path | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.build_id = build_id
        self.events_path = Path(events_path) if events_path else None
        self.logger = logger or logging.getLogger("image_customizer.build")
        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def event(self, kind: str, **fields: Any) -> Dict[str, Any]:
        e: Dict[str, Any] = {"ts": time.time(), "build_id": self.build_id, "event": kind}
        e.update(fields)
        with self._lock:
            self._buffer.append(e)
        self.logger.debug("EVENT %s", json.dumps(e, sort_keys=True, default=str))
        return e

    @contextmanager
    def timed(self, kind: str, name: str, **fields: Any) -> Iterator[None]:
        """Emit <kind>.start, then <kind>.success or <kind>.failure with elapsed time."""

        started = time.monotonic()
        self.event(f"{kind}.start", name=name, **fields)
        try:
            yield
        except BaseException as e:
            self.event(
                f"{kind}.failure",
                name=name,
                elapsed=round(time.monotonic() - started, 3),
                error_kind=error_kind(e).value,
                error=str(e),
                **fields,
            )
            raise
        self.event(f"{kind}.success", name=name, elapsed=round(time.monotonic() - started, 3), **fields)

    def failure(self, stage: str, elapsed: float, err: BaseException) -> None:
        """The single user-facing log entry for a failed stage."""

        kind = error_kind(err).value
        self.logger.error("FAILURE stage=%s elapsed=%.1fs kind=%s: %s", stage, elapsed, kind, err)
        self.event("build.failure", stage=stage, elapsed=round(elapsed, 3), error_kind=kind, error=str(err))

    @property
    def pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._buffer)

    def flush(self, path: str | Path | None = None) -> int:
        """Append buffered events to the events file; returns how many were written."""

        target = Path(path) if path else self.events_path
        with self._lock:
            events, self._buffer = self._buffer, []
        if target is None or not events:
            return 0
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as f:
            for e in events:
                f.write(json.dumps(e, sort_keys=True, default=str) + "\n")
        return len(events)


def load_events(path: str | Path) -> List[Dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return []
    events: List[Dict[str, Any]] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            logging.getLogger(__name__).warning("Skipping malformed event line in %s", p)
    return events


def summarize_events(
    path: str | Path,
    *,
    slow_seconds: float = 300.0,
    failure_ratio: float = 0.25,
) -> Dict[str, Dict[str, Any]]:
    """Aggregate step events across runs and flag slow or failure-prone steps."""

    stats: Dict[str, Dict[str, Any]] = {}
    for e in load_events(path):
        kind = str(e.get("event") or "")
        if kind not in {"step.success", "step.failure"}:
            continue
        s = stats.setdefault(str(e.get("name")), {"runs": 0, "failures": 0, "total_elapsed": 0.0, "max_elapsed": 0.0})
        elapsed = float(e.get("elapsed") or 0.0)
        s["runs"] += 1
        s["total_elapsed"] += elapsed
        s["max_elapsed"] = max(s["max_elapsed"], elapsed)
        if kind == "step.failure":
            s["failures"] += 1

    for s in stats.values():
        s["mean_elapsed"] = round(s.pop("total_elapsed") / s["runs"], 3)
        s["slow"] = s["mean_elapsed"] >= slow_seconds
        s["failure_prone"] = (s["failures"] / s["runs"]) >= failure_ratio
    return stats
