from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from ..config_store import ValueType
from ..errors import ValidationFailure
from .config_store_edit import ConfigEntry, ConfigStoreEditStep
from .inject_content import InjectContentStep
from .remove_paths import RemovePathsStep
from .startup_script import WINPE_STARTNET, StartupScriptStep
from .write_file import WriteFileStep

__all__ = [
    "ConfigEntry",
    "ConfigStoreEditStep",
    "InjectContentStep",
    "RemovePathsStep",
    "StartupScriptStep",
    "WriteFileStep",
    "build_mutation_steps",
]


def _require(item: Mapping[str, Any], key: str, where: str) -> Any:
    value = item.get(key)
    if value in (None, "", []):
        raise ValidationFailure(f"{where}: '{key}' is required")
    return value


def _str_list(value: Any, where: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ValidationFailure(f"{where} must be a list of strings")
    return tuple(str(v) for v in value)


def _inject(item: Mapping[str, Any], name: str, base_dir: Path) -> InjectContentStep:
    source = Path(str(_require(item, "source", name)))
    if not source.is_absolute():
        source = base_dir / source
    return InjectContentStep(name=name, source=source, destination=str(_require(item, "destination", name)))


def _write_file(item: Mapping[str, Any], name: str, base_dir: Path) -> WriteFileStep:
    content = item.get("content")
    if not isinstance(content, str):
        raise ValidationFailure(f"{name}: 'content' must be a string")
    return WriteFileStep(name=name, path=str(_require(item, "path", name)), content=content, newline=item.get("newline"))


def _startup_script(item: Mapping[str, Any], name: str, base_dir: Path) -> StartupScriptStep:
    return StartupScriptStep(
        name=name,
        commands=_str_list(_require(item, "commands", name), f"{name}.commands"),
        path=str(item.get("path") or WINPE_STARTNET),
        preamble=_str_list(item.get("preamble", ["wpeinit"]), f"{name}.preamble"),
        newline="\n" if item.get("newline") == "lf" else "\r\n",
    )


def _remove(item: Mapping[str, Any], name: str, base_dir: Path) -> RemovePathsStep:
    return RemovePathsStep(name=name, paths=_str_list(_require(item, "paths", name), f"{name}.paths"))


def _config_store(item: Mapping[str, Any], name: str, base_dir: Path) -> ConfigStoreEditStep:
    raw_entries = _require(item, "entries", name)
    if not isinstance(raw_entries, list):
        raise ValidationFailure(f"{name}.entries must be a list")
    entries: List[ConfigEntry] = []
    for i, e in enumerate(raw_entries):
        where = f"{name}.entries[{i}]"
        if not isinstance(e, dict):
            raise ValidationFailure(f"{where} must be a mapping")
        try:
            value_type = ValueType(str(e.get("type") or "string"))
        except ValueError:
            raise ValidationFailure(f"{where}: unknown value type {e.get('type')!r}") from None
        if "value" not in e:
            raise ValidationFailure(f"{where}: 'value' is required")
        entries.append(
            ConfigEntry(
                key=str(_require(e, "key", where)),
                name=str(e.get("name") or ""),
                value_type=value_type,
                value=e["value"],
            )
        )
    return ConfigStoreEditStep(
        name=name,
        alias=str(_require(item, "alias", name)),
        hive=str(_require(item, "hive", name)),
        entries=tuple(entries),
    )


STEP_KINDS = {
    "inject": _inject,
    "write_file": _write_file,
    "startup_script": _startup_script,
    "remove": _remove,
    "config_store": _config_store,
}


def build_mutation_steps(raw: Sequence[Dict[str, Any]], *, base_dir: str | Path = ".") -> list:
    """Build the ordered mutation list from the ``mutations`` config section."""

    steps = []
    seen: set[str] = set()
    for i, item in enumerate(raw or []):
        if not isinstance(item, dict):
            raise ValidationFailure(f"mutations[{i}] must be a mapping")
        kind = str(item.get("kind") or "")
        factory = STEP_KINDS.get(kind)
        if factory is None:
            raise ValidationFailure(f"mutations[{i}]: unknown kind {kind!r} (expected one of {sorted(STEP_KINDS)})")
        name = str(item.get("name") or f"{i:02d}_{kind}")
        if name in seen:
            raise ValidationFailure(f"Duplicate mutation step name: {name}")
        seen.add(name)
        steps.append(factory(item, name, Path(base_dir)))
    return steps
