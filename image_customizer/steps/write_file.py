from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteFileStep:
    name: str
    path: str
    content: str
    newline: Optional[str] = None
    idempotent: bool = True

    def apply(self, ctx: Any) -> str:
        ctx.tree.write_text(self.path, self.content, newline=self.newline)
        logger.info("Wrote %s (%d chars)", self.path, len(self.content))
        return self.path
