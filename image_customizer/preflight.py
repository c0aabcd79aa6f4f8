from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import psutil

from .errors import MissingPrerequisite, PermissionDenied, ResourceExhaustion, ValidationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreflightReport:
    artifact_bytes: int
    tools: dict
    free_bytes: dict


def validate_artifact(artifact: Path, *, suffixes: Sequence[str]) -> int:
    """Fail fast on a missing, empty or unsupported artifact. Returns its size."""

    if not artifact.exists():
        raise ValidationFailure(f"Image artifact not found: {artifact}")
    if not artifact.is_file():
        raise ValidationFailure(f"Image artifact is not a file: {artifact}")
    size = artifact.stat().st_size
    if size == 0:
        raise ValidationFailure(f"Image artifact is empty: {artifact}")
    name = artifact.name.lower()
    if suffixes and not name.endswith(tuple(s.lower() for s in suffixes)):
        raise ValidationFailure(f"{artifact.name} is not a supported image type ({', '.join(suffixes)})")
    if not os.access(artifact, os.R_OK | os.W_OK):
        raise PermissionDenied(f"Image artifact must be readable and writable: {artifact}")
    return size


def check_tools(tools: Sequence[str]) -> dict:
    found = {t: shutil.which(t) for t in tools}
    missing = [t for t, p in found.items() if p is None]
    if missing:
        raise MissingPrerequisite(f"Required tool(s) not found on PATH: {', '.join(missing)}")
    return found


def check_elevated() -> None:
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() != 0:
        raise PermissionDenied("This build must run with root privileges")


def _existing_parent(p: Path) -> Path:
    p = p.resolve()
    while not p.exists() and p != p.parent:
        p = p.parent
    return p


def check_free_space(path: Path, required: int, *, what: str) -> int:
    free = psutil.disk_usage(str(_existing_parent(path))).free
    if free < required:
        raise ResourceExhaustion(
            f"Not enough space for {what} at {path}: need {required} bytes, {free} available"
        )
    logger.info("Free space for %s at %s: %d bytes (need %d)", what, path, free, required)
    return free


def run_preflight(
    *,
    artifact: Path,
    work_dir: Path,
    suffixes: Sequence[str],
    required_tools: Sequence[str],
    require_root: bool = False,
    space_factor: float = 3.0,
    min_free_bytes: int = 0,
    package_destination: Optional[Path] = None,
) -> PreflightReport:
    """Checks that must pass before any mutation begins.

    The customize stage holds the working copy plus the unpacked tree, so it
    needs a multiple of the artifact size; packaging needs one more copy at
    the destination.
    """

    size = validate_artifact(artifact, suffixes=suffixes)
    tools = check_tools(required_tools)
    if require_root:
        check_elevated()

    free = {
        "customize": check_free_space(
            work_dir, int(size * space_factor) + min_free_bytes, what="the customize stage"
        )
    }
    if package_destination is not None:
        free["package"] = check_free_space(package_destination.parent, size + min_free_bytes, what="packaging")
    return PreflightReport(artifact_bytes=size, tools=tools, free_bytes=free)
