from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

from ..errors import ValidationFailure


class PathEscape(ValidationFailure):
    pass


def _relative_parts(rel: str | Path) -> Path:
    # Image-internal paths are often written Windows style (Windows\System32\...).
    text = str(rel)
    parts = PureWindowsPath(text).parts if "\\" in text else PurePosixPath(text).parts
    if parts and (parts[0] in {"/", "\\"} or PureWindowsPath(text).drive):
        raise PathEscape(f"Image paths must be relative to the image root: {rel}")
    return Path(*parts) if parts else Path(".")


@dataclass(frozen=True)
class MountedTree:
    """The filesystem of a mounted image, addressed by image-relative paths."""

    root: Path

    @classmethod
    def from_path(cls, root: str | Path) -> "MountedTree":
        return cls(root=Path(root).resolve())

    def resolve_rel(self, rel: str | Path) -> Path:
        candidate = (self.root / _relative_parts(rel)).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as e:
            raise PathEscape(f"Path escapes the mounted image: {rel}") from e
        return candidate

    def ensure_parent_dirs(self, rel: str | Path) -> Path:
        p = self.resolve_rel(rel)
        p.parent.mkdir(parents=True, exist_ok=True)
        return p

    def write_text(self, rel: str | Path, content: str, *, newline: str | None = None) -> Path:
        p = self.ensure_parent_dirs(rel)
        with p.open("w", encoding="utf-8", newline=newline) as f:
            f.write(content)
        return p
