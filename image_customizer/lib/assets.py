from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def copy_tree(src: str | Path, dst: str | Path) -> list[Path]:
    """Copy a file or a directory tree, overwriting what is there. Returns files written."""

    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(str(s))

    if s.is_file():
        if d.is_dir():
            d = d / s.name
        d.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(s, d)
        logger.info("Copied %s -> %s", s, d)
        return [d]

    written: list[Path] = []
    d.mkdir(parents=True, exist_ok=True)
    for item in sorted(s.rglob("*")):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir():
            out.mkdir(parents=True, exist_ok=True)
        else:
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, out)
            written.append(out)
    logger.info("Copied tree %s -> %s (%d files)", s, d, len(written))
    return written


def remove_path(p: str | Path) -> bool:
    """Remove a file or tree. Returns False when there was nothing to remove."""

    path = Path(p)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return True
    if path.exists() or path.is_symlink():
        path.unlink()
        return True
    return False
