import pytest
import yaml

from image_customizer.config_store import (
    ConfigStorePatcher,
    HandleState,
    ValueType,
    YamlHiveBackend,
    coerce_value,
    make_backend,
)
from image_customizer.errors import (
    AlreadyLoaded,
    ConfigStoreFatal,
    NotLoaded,
    SessionStateError,
    TransientResourceBusy,
    ValidationFailure,
)
from image_customizer.session import SessionState

from .conftest import FlakyHiveBackend, make_live_session


def _hive(tmp_path, data=None):
    p = tmp_path / "mount" / "Windows" / "System32" / "config" / "SOFTWARE"
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(yaml.safe_dump(data or {}))
    return p


def _patcher(backend, registry, sleep, **kw):
    kw.setdefault("settle_delay", 0)
    return ConfigStorePatcher(backend, registry=registry, sleep=sleep, **kw)


def test_set_and_unload_persists_typed_values(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    hive = _hive(tmp_path, {"Existing": {"Keep": {"type": "string", "value": "yes"}}})
    p = _patcher(YamlHiveBackend(), registry, sleep)

    h = p.load("SOFTWARE", hive, session=session)
    assert h.state == HandleState.LOADED
    assert session.outstanding_handles() == [h]

    p.set("SOFTWARE", "Policies\\Setup", "CmdLine", "string", "setup.exe /q")
    p.set("SOFTWARE", "Policies\\Setup", "Path", ValueType.EXPAND_STRING, "%SystemRoot%\\x")
    p.set("SOFTWARE", "Policies\\Setup", "Flags", "dword", "0x10")
    assert p.get("SOFTWARE", "Policies\\Setup", "Flags") == 16

    p.unload(h)

    assert h.state == HandleState.UNLOADED
    assert session.outstanding_handles() == []
    assert registry.aliases() == []
    data = yaml.safe_load(hive.read_text())
    assert data["Existing"]["Keep"]["value"] == "yes"
    assert data["Policies\\Setup"]["CmdLine"] == {"type": "string", "value": "setup.exe /q"}
    assert data["Policies\\Setup"]["Path"]["type"] == "expand_string"
    assert data["Policies\\Setup"]["Flags"] == {"type": "dword", "value": 16}


def test_double_load_and_unload_without_load(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    hive = _hive(tmp_path)
    p = _patcher(YamlHiveBackend(), registry, sleep)

    with pytest.raises(NotLoaded):
        p.unload("SOFTWARE")
    with pytest.raises(NotLoaded):
        p.set("SOFTWARE", "K", "V", "string", "x")

    p.load("SOFTWARE", hive, session=session)
    with pytest.raises(AlreadyLoaded):
        p.load("SOFTWARE", hive, session=session)

    p.unload("SOFTWARE")
    with pytest.raises(NotLoaded):
        p.unload("SOFTWARE")


def test_load_requires_mounted_session(tmp_path, registry, sleep):
    session = make_live_session(tmp_path, state=SessionState.COMMITTED)
    p = _patcher(YamlHiveBackend(), registry, sleep)

    with pytest.raises(SessionStateError):
        p.load("SOFTWARE", _hive(tmp_path), session=session)
    assert registry.aliases() == []


def test_unload_retries_with_increasing_backoff(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    backend = FlakyHiveBackend(busy_unloads=3)
    p = _patcher(backend, registry, sleep, unload_attempts=5, unload_backoff=0.5)
    p.load("SOFTWARE", _hive(tmp_path), session=session)

    p.unload("SOFTWARE")

    assert backend.unload_calls == 4
    assert sleep.calls == [0.5, 1.0, 1.5]
    assert sleep.calls == sorted(sleep.calls)
    assert not p.is_loaded("SOFTWARE")


def test_settle_delay_before_each_unload_attempt(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    p = _patcher(FlakyHiveBackend(busy_unloads=1), registry, sleep, settle_delay=0.2, unload_backoff=0.5)
    p.load("SOFTWARE", _hive(tmp_path), session=session)

    p.unload("SOFTWARE")

    assert sleep.calls == [0.2, 0.5, 0.2]


def test_unload_exhaustion_is_fatal_and_collects_diagnostics(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    seen = []

    def on_fatal(handle, err):
        seen.append((handle.alias, err.attempts))
        return "bundle"

    p = _patcher(FlakyHiveBackend(busy_unloads=100), registry, sleep, on_fatal=on_fatal)
    h = p.load("SOFTWARE", _hive(tmp_path), session=session)

    with pytest.raises(ConfigStoreFatal) as ei:
        p.unload(h)

    assert ei.value.attempts == 5
    assert ei.value.diagnostics == "bundle"
    assert isinstance(ei.value.__cause__, TransientResourceBusy)
    assert seen == [("SOFTWARE", 5)]
    assert h.state == HandleState.UNLOAD_PENDING
    assert session.outstanding_handles() == [h]


def test_open_key_blocks_unload_until_closed(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    backend = YamlHiveBackend()
    p = _patcher(backend, registry, sleep, unload_attempts=2)
    p.load("SOFTWARE", _hive(tmp_path), session=session)

    key = backend.open_key("SOFTWARE", "Leaked")
    with pytest.raises(ConfigStoreFatal):
        p.unload("SOFTWARE")

    key.close()
    p.unload("SOFTWARE")
    assert registry.aliases() == []


def test_loaded_context_always_unloads(tmp_path, registry, sleep):
    session = make_live_session(tmp_path)
    p = _patcher(YamlHiveBackend(), registry, sleep)

    with pytest.raises(ValidationFailure):
        with p.loaded("SOFTWARE", _hive(tmp_path), session=session):
            p.set("SOFTWARE", "K", "N", "dword", -1)

    assert not p.is_loaded("SOFTWARE")
    assert session.outstanding_handles() == []


def test_coerce_value_ranges():
    assert coerce_value(ValueType.DWORD, 4294967295) == 4294967295
    assert coerce_value(ValueType.QWORD, "18446744073709551615") == 2**64 - 1
    assert coerce_value(ValueType.DWORD, True) == 1
    with pytest.raises(ValidationFailure):
        coerce_value(ValueType.DWORD, 2**32)
    with pytest.raises(ValidationFailure):
        coerce_value(ValueType.DWORD, "ten")
    with pytest.raises(ValidationFailure):
        coerce_value(ValueType.STRING, 5)


def test_make_backend():
    assert isinstance(make_backend("yaml"), YamlHiveBackend)
    with pytest.raises(ValidationFailure):
        make_backend("etcd")


def test_handle_left_by_fatal_unload_is_dropped_once_session_ends(tmp_path, registry, sleep):
    backend = FlakyHiveBackend(busy_unloads=5)
    p = _patcher(backend, registry, sleep)
    first = make_live_session(tmp_path / "one")
    p.load("SOFTWARE", _hive(tmp_path / "one"), session=first)
    with pytest.raises(ConfigStoreFatal):
        p.unload("SOFTWARE")

    second = make_live_session(tmp_path / "two")
    with pytest.raises(AlreadyLoaded):
        p.load("SOFTWARE", _hive(tmp_path / "two"), session=second)

    first.state = SessionState.DISCARDED
    h = p.load("SOFTWARE", _hive(tmp_path / "two"), session=second)

    assert registry.get("SOFTWARE") is h
    p.unload(h)
    assert registry.aliases() == []
