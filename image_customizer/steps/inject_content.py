from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..lib.assets import copy_tree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InjectContentStep:
    """Copy a host file or directory into the image."""

    name: str
    source: Path
    destination: str
    idempotent: bool = True

    def apply(self, ctx: Any) -> list[str]:
        dst = ctx.tree.resolve_rel(self.destination)
        written = copy_tree(self.source, dst)
        logger.info("Injected %s -> %s (%d files)", self.source, self.destination, len(written))
        return [str(p.relative_to(ctx.tree.root)) for p in written]
