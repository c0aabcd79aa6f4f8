from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Tuple

from ..lib.assets import remove_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovePathsStep:
    name: str
    paths: Tuple[str, ...]
    idempotent: bool = True

    def apply(self, ctx: Any) -> list[str]:
        removed: list[str] = []
        for rel in self.paths:
            if remove_path(ctx.tree.resolve_rel(rel)):
                removed.append(rel)
            else:
                logger.debug("Nothing to remove at %s", rel)
        logger.info("Removed %d of %d path(s)", len(removed), len(self.paths))
        return removed
