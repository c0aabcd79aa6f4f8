from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Tuple

from ..config_store import ValueType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigEntry:
    key: str
    name: str
    value_type: ValueType
    value: Any


@dataclass(frozen=True)
class ConfigStoreEditStep:
    """Attach a hive from the image, write entries, detach it again."""

    name: str
    alias: str
    hive: str
    entries: Tuple[ConfigEntry, ...]
    idempotent: bool = True

    def apply(self, ctx: Any) -> int:
        backing_file = ctx.tree.resolve_rel(self.hive)
        with ctx.patcher.loaded(self.alias, backing_file, session=ctx.session):
            for e in self.entries:
                ctx.patcher.set(self.alias, e.key, e.name, e.value_type, e.value)
        logger.info("Applied %d entries to %s (%s)", len(self.entries), self.alias, self.hive)
        return len(self.entries)
