from __future__ import annotations

import io
import os
import shutil
import tarfile
import threading
from pathlib import Path

import pytest

from image_customizer.config_store import HandleRegistry, YamlHiveBackend
from image_customizer.errors import TransientResourceBusy
from image_customizer.lib.command import ExternalOperationResult
from image_customizer.session import MountSession, SessionState


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeToolkit:
    """Image is a text file; mounting writes it to hello.txt, commit writes it back."""

    name = "fake"
    suffixes = (".img",)
    required_tools = ()

    def __init__(self, *, mount_failures=0, commit_result=None):
        self.mount_failures = mount_failures
        self.commit_result = commit_result
        self.mount_calls = 0
        self.dismounts = []
        self.optimized = []
        self._images = {}

    def mount(self, image_path, index, mount_dir, *, timeout):
        self.mount_calls += 1
        if self.mount_calls <= self.mount_failures:
            raise TransientResourceBusy("previous session still releasing")
        (Path(mount_dir) / "hello.txt").write_text(Path(image_path).read_text())
        self._images[str(mount_dir)] = Path(image_path)
        return str(mount_dir)

    def dismount(self, handle, *, commit, timeout):
        self.dismounts.append((handle, commit))
        if commit and self.commit_result is not None:
            return self.commit_result
        if commit:
            self._images[handle].write_text((Path(handle) / "hello.txt").read_text())
        else:
            shutil.rmtree(handle, ignore_errors=True)
        return ExternalOperationResult(argv=["fake", "dismount"], exit_code=0, stdout="", stderr="")

    def optimize_or_export(self, image_path, options, *, timeout):
        self.optimized.append(dict(options))
        if options.get("destination"):
            Path(options["destination"]).write_bytes(Path(image_path).read_bytes())
        return ExternalOperationResult(argv=["fake", "optimize"], exit_code=0, stdout="", stderr="")


class FlakyHiveBackend(YamlHiveBackend):
    """YAML hives whose unload reports busy for the first ``busy_unloads`` attempts."""

    def __init__(self, busy_unloads=0):
        super().__init__()
        self.busy_unloads = busy_unloads
        self.unload_calls = 0

    def unload(self, alias):
        self.unload_calls += 1
        if self.unload_calls <= self.busy_unloads:
            raise TransientResourceBusy(f"hive {alias} in use")
        super().unload(alias)


class FakeRepository:
    def __init__(self, *, installed=None, delay=0.0, slow=(), broken=(), payload=b"payload"):
        self.installed = dict(installed or {})
        self.delay = delay
        self.slow = set(slow)
        self.broken = set(broken)
        self.payload = payload
        self.sources = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def installed_version(self, name, *, cancel_event):
        with self._lock:
            return self.installed.get(name)

    def download(self, name, version, dest_dir, *, cancel_event):
        p = Path(dest_dir) / f"{name}-{version or '0'}.whl"
        p.write_bytes(self.payload)
        return p

    def install(self, name, version, *, source=None, cancel_event):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            cancel_event.wait(30.0 if name in self.slow else self.delay)
            if name in self.broken:
                raise RuntimeError(f"{name}: no matching distribution")
            version = version or "1.0"
            with self._lock:
                self.installed[name] = version
                self.sources[name] = source.name if source is not None else None
            return version
        finally:
            with self._lock:
                self.active -= 1


def make_tar_image(path, files):
    """Write a tar archive holding files ({relative path: str | bytes})."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w") as tf:
        for rel, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(rel)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


def read_tar_member(path, rel):
    with tarfile.open(path) as tf:
        for m in tf.getmembers():
            if os.path.normpath(m.name) == rel:
                return tf.extractfile(m).read().decode("utf-8")
    raise KeyError(rel)


def make_live_session(tmp_path, *, state=SessionState.MOUNTED):
    mount = tmp_path / "mount"
    mount.mkdir(parents=True, exist_ok=True)
    return MountSession(
        artifact_path=tmp_path / "image.img",
        working_copy_path=tmp_path / "work" / "image.img",
        mount_path=mount,
        image_index=1,
        work_area=tmp_path / "work",
        state=state,
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def registry():
    return HandleRegistry()


@pytest.fixture
def artifact(tmp_path):
    p = tmp_path / "images" / "base.img"
    p.parent.mkdir()
    p.write_text("original contents\n")
    return p
