from dataclasses import dataclass, field

import pytest

from image_customizer.config_store import ConfigStorePatcher, YamlHiveBackend
from image_customizer.errors import ErrorKind, StepFailed, TransientResourceBusy
from image_customizer.logging_utils import BuildLog
from image_customizer.pipeline import MutationContext, run_pipeline
from image_customizer.session import MountSessionManager, SessionState

from .conftest import FakeToolkit


@dataclass
class RecordingStep:
    name: str
    journal: list
    failures: list = field(default_factory=list)
    idempotent: bool = True

    def apply(self, ctx):
        self.journal.append(self.name)
        if self.failures:
            raise self.failures.pop(0)
        (ctx.session.mount_path / f"{self.name}.txt").write_text(self.name)
        return self.name.upper()


def _setup(tmp_path, artifact, registry, sleep):
    log = BuildLog("pipeline-test")
    sessions = MountSessionManager(FakeToolkit(), log=log, sleep=sleep)
    session = sessions.acquire(artifact, tmp_path / "work")
    patcher = ConfigStorePatcher(YamlHiveBackend(), registry=registry, settle_delay=0, sleep=sleep)
    return MutationContext(session=session, patcher=patcher, log=log), sessions


def test_steps_run_in_declared_order(tmp_path, artifact, registry, sleep):
    ctx, sessions = _setup(tmp_path, artifact, registry, sleep)
    journal = []
    steps = [RecordingStep(n, journal) for n in ("inject", "startup", "registry")]

    result = run_pipeline(ctx=ctx, steps=steps, sessions=sessions, sleep=sleep)

    assert journal == ["inject", "startup", "registry"]
    assert result.ran_steps == ["inject", "startup", "registry"]
    assert result.results["startup"] == "STARTUP"
    assert ctx.session.state == SessionState.MODIFIED

    events = [(e["event"], e.get("name")) for e in ctx.log.pending if e["event"].startswith("step.")]
    assert events == [
        ("step.start", "inject"),
        ("step.success", "inject"),
        ("step.start", "startup"),
        ("step.success", "startup"),
        ("step.start", "registry"),
        ("step.success", "registry"),
    ]


def test_failure_aborts_collects_diagnostics_then_discards(tmp_path, artifact, registry, sleep):
    before = artifact.read_bytes()
    ctx, sessions = _setup(tmp_path, artifact, registry, sleep)
    journal = []
    boom = PermissionError("access denied")
    steps = [
        RecordingStep("first", journal),
        RecordingStep("second", journal, failures=[boom]),
        RecordingStep("third", journal),
    ]
    collected = []

    def collect(*, reason, session, error):
        # The tree must still be mounted while diagnostics run.
        collected.append((reason, session.state, (session.mount_path / "first.txt").exists(), error))
        return "bundle"

    with pytest.raises(StepFailed) as ei:
        run_pipeline(ctx=ctx, steps=steps, sessions=sessions, collect_diagnostics=collect, sleep=sleep)

    assert journal == ["first", "second"]
    assert ei.value.step == "second"
    assert ei.value.cause is boom
    assert ei.value.kind == ErrorKind.PERMISSION_DENIED
    assert ei.value.diagnostics == "bundle"
    assert collected == [("step second failed", SessionState.MODIFIED, True, boom)]
    assert ctx.session.state == SessionState.DISCARDED
    assert artifact.read_bytes() == before
    assert any(e["event"] == "step.failure" and e["name"] == "second" for e in ctx.log.pending)


def test_idempotent_step_retried_on_contention(tmp_path, artifact, registry, sleep):
    ctx, sessions = _setup(tmp_path, artifact, registry, sleep)
    journal = []
    step = RecordingStep("flaky", journal, failures=[TransientResourceBusy("file in use")])

    result = run_pipeline(ctx=ctx, steps=[step], sessions=sessions, sleep=sleep)

    assert journal == ["flaky", "flaky"]
    assert result.ran_steps == ["flaky"]
    assert sleep.calls == [1.0]


def test_non_idempotent_step_is_not_retried(tmp_path, artifact, registry, sleep):
    ctx, sessions = _setup(tmp_path, artifact, registry, sleep)
    journal = []
    step = RecordingStep("once", journal, failures=[TransientResourceBusy("file in use")], idempotent=False)

    with pytest.raises(StepFailed) as ei:
        run_pipeline(ctx=ctx, steps=[step], sessions=sessions, sleep=sleep)

    assert journal == ["once"]
    assert isinstance(ei.value.cause, TransientResourceBusy)
    assert ctx.session.state == SessionState.DISCARDED
