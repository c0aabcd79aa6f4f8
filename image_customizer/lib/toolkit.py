"""Adapters over the imaging toolkit that actually mounts and commits images.

The customizer never manipulates image formats itself; it drives an
external tool through the bounded runner. Two adapters ship:

- WimlibToolkit: Windows images (.wim/.esd) via ``wimlib-imagex``.
- TarToolkit: tar-archived root filesystems via ``tar``. "Mounting" extracts
  into the mount dir and "commit" re-archives it over the image file.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

from ..errors import OperationTimeout, TransientResourceBusy, ValidationFailure
from .command import ExternalOperationResult, run_operation

logger = logging.getLogger(__name__)


class ImagingToolkit(Protocol):
    name: str
    suffixes: Sequence[str]
    required_tools: Sequence[str]

    def mount(self, image_path: Path, index: int, mount_dir: Path, *, timeout: float) -> str:
        ...

    def dismount(self, handle: str, *, commit: bool, timeout: float) -> ExternalOperationResult:
        ...

    def optimize_or_export(
        self, image_path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> ExternalOperationResult:
        ...


def _mount_result(r: ExternalOperationResult, *, what: str) -> None:
    if r.timed_out:
        raise OperationTimeout(f"{what} timed out after {r.elapsed:.0f}s")
    if r.exit_code != 0:
        # The toolkit cannot tell us why; a previous session's lingering
        # release is the common cause, so this is treated as contention.
        raise TransientResourceBusy(f"{what} failed ({r.exit_code}): {r.stderr.strip()}")


class WimlibToolkit:
    name = "wimlib"
    suffixes = (".wim", ".esd")
    required_tools = ("wimlib-imagex",)

    def __init__(self, executable: str = "wimlib-imagex") -> None:
        self.executable = executable

    def mount(self, image_path: Path, index: int, mount_dir: Path, *, timeout: float) -> str:
        r = run_operation(
            [self.executable, "mountrw", str(image_path), str(index), str(mount_dir)],
            timeout=timeout,
        )
        _mount_result(r, what=f"mount {image_path.name}:{index}")
        return str(mount_dir)

    def dismount(self, handle: str, *, commit: bool, timeout: float) -> ExternalOperationResult:
        argv = [self.executable, "unmount", handle]
        if commit:
            argv.append("--commit")
        return run_operation(argv, timeout=timeout)

    def optimize_or_export(
        self, image_path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> ExternalOperationResult:
        destination = options.get("destination")
        compress = options.get("compress")
        if destination:
            argv = [
                self.executable,
                "export",
                str(image_path),
                str(options.get("index", "all")),
                str(destination),
            ]
        else:
            argv = [self.executable, "optimize", str(image_path)]
            if options.get("recompress"):
                argv.append("--recompress")
        if compress:
            argv.append(f"--compress={compress}")
        return run_operation(argv, timeout=timeout)


def _tar_compression_flag(path: Path) -> Optional[str]:
    name = path.name.lower()
    if name.endswith((".tar.gz", ".tgz")):
        return "-z"
    if name.endswith((".tar.xz", ".txz")):
        return "-J"
    if name.endswith((".tar.bz2", ".tbz2")):
        return "-j"
    return None


class TarToolkit:
    name = "tar"
    suffixes = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2")
    required_tools = ("tar",)

    def __init__(self, executable: str = "tar") -> None:
        self.executable = executable
        self._images: dict[str, Path] = {}

    def _tar(self, mode: str, archive: Path, *, like: Optional[Path] = None) -> list[str]:
        argv = [self.executable, mode]
        flag = _tar_compression_flag(like or archive)
        if flag:
            argv.append(flag)
        argv += ["-f", str(archive)]
        return argv

    def mount(self, image_path: Path, index: int, mount_dir: Path, *, timeout: float) -> str:
        if index != 1:
            raise ValidationFailure(f"tar images hold a single root filesystem (index {index} requested)")
        mount_dir.mkdir(parents=True, exist_ok=True)
        r = run_operation([*self._tar("-x", image_path), "-C", str(mount_dir)], timeout=timeout)
        _mount_result(r, what=f"extract {image_path.name}")
        self._images[str(mount_dir)] = image_path
        return str(mount_dir)

    def dismount(self, handle: str, *, commit: bool, timeout: float) -> ExternalOperationResult:
        mount_dir = Path(handle)
        image_path = self._images.get(handle)
        if commit:
            if image_path is None:
                raise ValidationFailure(f"No image mounted at {handle}")
            # Archive next to the image first so a failed commit leaves the old one intact.
            partial = image_path.with_name(image_path.name + ".partial")
            r = run_operation(
                [*self._tar("-c", partial, like=image_path), "-C", str(mount_dir), "."],
                timeout=timeout,
            )
            if not r.ok:
                partial.unlink(missing_ok=True)
                return r
            partial.replace(image_path)
        else:
            r = ExternalOperationResult(argv=["discard", handle], exit_code=0, stdout="", stderr="")

        shutil.rmtree(mount_dir, ignore_errors=True)
        self._images.pop(handle, None)
        return r

    def optimize_or_export(
        self, image_path: Path, options: Mapping[str, Any], *, timeout: float
    ) -> ExternalOperationResult:
        destination = options.get("destination")
        if destination:
            dest = Path(destination)
            dest.parent.mkdir(parents=True, exist_ok=True)
            if _tar_compression_flag(dest) == _tar_compression_flag(image_path):
                shutil.copy2(image_path, dest)
                return ExternalOperationResult(
                    argv=["copy", str(image_path), str(dest)], exit_code=0, stdout="", stderr=""
                )
            # Repack into the destination's own compression.
            with tempfile.TemporaryDirectory(prefix="repack-", dir=str(dest.parent)) as tmp:
                r = run_operation([*self._tar("-x", image_path), "-C", tmp], timeout=timeout)
                if not r.ok:
                    return r
                return run_operation([*self._tar("-c", dest), "-C", tmp, "."], timeout=timeout)
        # Nothing to compact in a tar; a full listing verifies the archive is readable.
        return run_operation([*self._tar("-t", image_path)], timeout=timeout)


TOOLKITS = {
    "wimlib": WimlibToolkit,
    "tar": TarToolkit,
}


def get_toolkit(name: str) -> ImagingToolkit:
    try:
        return TOOLKITS[name]()
    except KeyError:
        raise ValueError(f"Unknown imaging toolkit {name!r} (expected one of {sorted(TOOLKITS)})") from None
