"""Offline image customizer (Python-first, checkpointed).

Core design goals:
- Never leave the source artifact half-modified
- Idempotent, ordered mutation steps
- Bounded external operations (timeouts kill the whole process tree)
- Resumable builds via stage checkpoints
- Diagnostics captured before cleanup
- Centralized logging
"""

__all__ = []
