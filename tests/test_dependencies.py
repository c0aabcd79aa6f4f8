import hashlib
import threading
import time

import pytest

from image_customizer.dependencies import (
    DependencySpec,
    DependencyState,
    IntegrityPolicy,
    install_dependencies,
    make_repository,
    parse_dependency_specs,
)
from image_customizer.errors import ValidationFailure
from image_customizer.lib.batch import run_batch
from image_customizer.logging_utils import BuildLog

from .conftest import FakeRepository


def _states(report):
    return {r.spec.name: r.state for r in report.results}


def test_throttle_bounds_concurrency():
    repo = FakeRepository(delay=0.05)
    specs = [DependencySpec(f"pkg{i}") for i in range(10)]

    report = install_dependencies(specs, repo, throttle=4, batch_timeout=60)

    assert set(_states(report).values()) == {DependencyState.INSTALLED}
    assert 1 <= repo.max_active <= 4
    assert [r.spec.name for r in report.results] == [s.name for s in specs]


def test_mixed_outcomes_are_reported_per_item():
    repo = FakeRepository(installed={"present": "1.0", "stale": "1.0"}, broken={"broken"})
    specs = [
        DependencySpec("present"),
        DependencySpec("stale", version="2.0"),
        DependencySpec("fresh"),
        DependencySpec("broken", optional=True),
    ]
    log = BuildLog("deps")

    report = install_dependencies(specs, repo, throttle=2, log=log)

    assert _states(report) == {
        "present": DependencyState.ALREADY_PRESENT,
        "stale": DependencyState.UPDATED,
        "fresh": DependencyState.INSTALLED,
        "broken": DependencyState.FAILED,
    }
    assert report.by_state(DependencyState.UPDATED)[0].reason == "1.0 -> 2.0"
    assert "no matching distribution" in report.by_state(DependencyState.FAILED)[0].reason
    assert report.blocking == []
    assert len([e for e in log.pending if e["event"] == "dependency.result"]) == 4


def test_required_failure_is_blocking():
    report = install_dependencies([DependencySpec("needed")], FakeRepository(broken={"needed"}))
    assert [r.spec.name for r in report.blocking] == ["needed"]


def test_batch_timeout_marks_unfinished_items_incomplete():
    repo = FakeRepository(slow={"slow1", "slow2", "slow3"})
    specs = [DependencySpec("quick"), DependencySpec("slow1"), DependencySpec("slow2"), DependencySpec("slow3")]

    started = time.monotonic()
    report = install_dependencies(specs, repo, throttle=2, batch_timeout=0.5)

    assert time.monotonic() - started < 10
    assert _states(report) == {
        "quick": DependencyState.INSTALLED,
        "slow1": DependencyState.INCOMPLETE,
        "slow2": DependencyState.INCOMPLETE,
        "slow3": DependencyState.INCOMPLETE,
    }
    assert {r.spec.name for r in report.blocking} == {"slow1", "slow2", "slow3"}


def test_integrity_mismatch_fails_the_item():
    good = hashlib.sha256(b"payload").hexdigest()
    bad = hashlib.sha256(b"tampered").hexdigest()
    repo = FakeRepository()

    report = install_dependencies([DependencySpec("ok", sha256=good), DependencySpec("evil", sha256=bad)], repo)

    assert _states(report) == {"ok": DependencyState.INSTALLED, "evil": DependencyState.FAILED}
    assert "sha256 mismatch" in report.results[1].reason
    assert repo.sources["ok"] == "ok-0.whl"
    assert "evil" not in repo.installed


def test_integrity_policy_options():
    bad = hashlib.sha256(b"tampered").hexdigest()

    lenient = install_dependencies(
        [DependencySpec("evil", sha256=bad)], FakeRepository(), policy=IntegrityPolicy(allow_mismatch=True)
    )
    assert _states(lenient) == {"evil": DependencyState.INSTALLED}

    strict = install_dependencies([DependencySpec("nohash")], FakeRepository(), policy=IntegrityPolicy(require_hash=True))
    assert _states(strict) == {"nohash": DependencyState.FAILED}

    assert IntegrityPolicy.from_mapping({"verify": False}).verify is False


def test_parse_dependency_specs():
    specs = parse_dependency_specs(["wimlib", {"name": "PyYAML", "version": "6.0.1", "optional": True}])
    assert specs[0] == DependencySpec("wimlib")
    assert specs[1].version == "6.0.1" and specs[1].optional

    with pytest.raises(ValidationFailure):
        parse_dependency_specs([{"name": "../evil"}])
    with pytest.raises(ValidationFailure):
        parse_dependency_specs(["a", "A"])
    with pytest.raises(ValidationFailure):
        parse_dependency_specs([{"name": "a", "sha256": "abc"}])
    with pytest.raises(ValidationFailure):
        parse_dependency_specs({"name": "a"})


def test_make_repository_rejects_unknown_kind():
    with pytest.raises(ValidationFailure):
        make_repository({"kind": "apt"}, timeout=10)


def test_run_batch_records_errors_without_raising():
    def fn(item, cancel_event):
        if item == 2:
            raise ValueError("two")
        return item * 10

    outcomes = run_batch([1, 2, 3], fn, throttle=2)

    assert [o.ok for o in outcomes] == [True, False, True]
    assert outcomes[0].value == 10
    assert isinstance(outcomes[1].error, ValueError)


def test_run_batch_signals_cancel_on_deadline():
    seen = threading.Event()

    def fn(item, cancel_event):
        if cancel_event.wait(30):
            seen.set()

    outcomes = run_batch(["a"], fn, batch_timeout=0.2)

    assert outcomes[0].incomplete
    assert seen.wait(5)
