import threading
import time

import psutil
import pytest

from image_customizer.errors import ImageBuildError, OperationTimeout
from image_customizer.lib.batch import run_batch
from image_customizer.lib.command import PROFILES, get_profile, run_checked, run_operation


def _gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def test_run_operation_captures_output_and_exit_code():
    r = run_operation(["sh", "-c", "echo out; echo err >&2; exit 3"], timeout=30)

    assert r.exit_code == 3
    assert r.stdout.strip() == "out"
    assert r.stderr.strip() == "err"
    assert not r.timed_out
    assert not r.ok


def test_run_operation_passes_input():
    r = run_operation(["cat"], timeout=30, input_text="hello\n")
    assert r.ok
    assert r.stdout == "hello\n"


def test_timeout_kills_the_whole_process_tree():
    started = time.monotonic()
    r = run_operation(["sh", "-c", "sleep 30 & echo $!; wait"], timeout=1.0)
    elapsed = time.monotonic() - started

    assert r.timed_out
    assert r.exit_code is None
    assert elapsed < 15
    grandchild = int(r.stdout.split()[0])
    deadline = time.monotonic() + 5
    while not _gone(grandchild) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert _gone(grandchild)


def test_cancel_event_stops_operation():
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        r = run_operation(["sleep", "30"], timeout=60, cancel_event=cancel)
    finally:
        timer.cancel()

    assert r.timed_out
    assert r.exit_code is None
    assert r.elapsed < 15


def test_run_checked_raises_on_failure_and_timeout():
    with pytest.raises(ImageBuildError):
        run_checked(["sh", "-c", "exit 1"], timeout=30)
    with pytest.raises(OperationTimeout):
        run_checked(["sleep", "30"], timeout=0.3)


def test_profiles_scale_commit_timeout():
    assert get_profile("large").commit > get_profile("small").commit

    custom = PROFILES["small"].with_overrides({"commit": 42})
    assert custom.commit == 42.0
    assert custom.mount == PROFILES["small"].mount

    with pytest.raises(ValueError):
        PROFILES["small"].with_overrides({"bogus": 1})
    with pytest.raises(ValueError):
        get_profile("huge")


def test_batch_deadline_kills_children_before_returning(tmp_path):
    def fn(item, cancel_event):
        pid_file = tmp_path / f"{item}.pid"
        return run_operation(["sh", "-c", f"echo $$ > {pid_file}; exec sleep 30"], timeout=60, cancel_event=cancel_event)

    started = time.monotonic()
    outcomes = run_batch(["a", "b"], fn, throttle=2, batch_timeout=1.0)

    assert [o.incomplete for o in outcomes] == [True, True]
    assert time.monotonic() - started < 20
    pids = [int((tmp_path / f"{item}.pid").read_text()) for item in ("a", "b")]
    assert all(_gone(pid) for pid in pids)
