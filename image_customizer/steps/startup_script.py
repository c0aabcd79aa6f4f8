from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Tuple

logger = logging.getLogger(__name__)

WINPE_STARTNET = "Windows/System32/startnet.cmd"


@dataclass(frozen=True)
class StartupScriptStep:
    """Rewrite the image's startup script.

    Lines of the existing script that match the preamble (e.g. ``wpeinit``,
    which WinPE needs before anything else) are kept at the top; everything
    else is replaced by the configured commands.
    """

    name: str
    commands: Tuple[str, ...]
    path: str = WINPE_STARTNET
    preamble: Tuple[str, ...] = ("wpeinit",)
    newline: str = "\r\n"
    idempotent: bool = True

    def render(self, existing: str) -> str:
        wanted = {p.strip().lower() for p in self.preamble}
        kept = [line.strip() for line in existing.splitlines() if line.strip().lower() in wanted]
        # Preamble entries missing from the old script are still emitted, in configured order.
        head = [p for p in self.preamble if p.strip().lower() not in {k.lower() for k in kept}]
        lines = [*kept, *head, *self.commands]
        return self.newline.join(lines) + self.newline

    def apply(self, ctx: Any) -> str:
        script = ctx.tree.resolve_rel(self.path)
        existing = script.read_text(encoding="utf-8", errors="replace") if script.exists() else ""
        content = self.render(existing)
        ctx.tree.write_text(self.path, content, newline="")
        logger.info("Rewrote startup script %s (%d commands)", self.path, len(self.commands))
        return content
