from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .dependencies import DependencySpec, IntegrityPolicy, parse_dependency_specs
from .diagnostics import (
    DEFAULT_CONFIG_PATTERNS,
    DEFAULT_LOG_PATTERNS,
    DEFAULT_MAX_FILE_BYTES,
    DEFAULT_MAX_FILES,
    DEFAULT_MAX_LISTING_ENTRIES,
    StoreExport,
)
from .errors import ValidationFailure
from .lib.command import TimeoutProfile, get_profile


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValidationFailure(f"'{key}' must be a mapping")
    return value


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any]
    base_dir: Path = Path(".")

    def _path(self, value: str) -> Path:
        p = Path(value)
        return p if p.is_absolute() else self.base_dir / p

    @property
    def artifact(self) -> Path:
        value = self.raw.get("artifact")
        if not value:
            raise ValidationFailure("'artifact' is required")
        return self._path(str(value))

    @property
    def image_index(self) -> int:
        return int(self.raw.get("image_index") or 1)

    @property
    def toolkit(self) -> str:
        return str(self.raw.get("toolkit") or "wimlib")

    @property
    def work_dir(self) -> Path:
        return self._path(str(_section(self.raw, "paths").get("work_dir") or "build/work"))

    @property
    def logs_dir(self) -> Path:
        return self._path(str(_section(self.raw, "paths").get("logs_dir") or "logs"))

    @property
    def checkpoint_path(self) -> Path:
        return self._path(str(_section(self.raw, "paths").get("checkpoints") or "build/checkpoints.jsonl"))

    @property
    def events_path(self) -> Path:
        value = _section(self.raw, "paths").get("events")
        return self._path(str(value)) if value else self.logs_dir / "build-events.jsonl"

    @property
    def timeouts(self) -> TimeoutProfile:
        try:
            return get_profile(str(self.raw.get("profile") or "small")).with_overrides(_section(self.raw, "timeouts"))
        except ValueError as e:
            raise ValidationFailure(str(e)) from e

    @property
    def mount_retries(self) -> int:
        return int(_section(self.raw, "mount").get("retries", 2))

    @property
    def mount_retry_delay(self) -> float:
        return float(_section(self.raw, "mount").get("retry_delay", 5.0))

    @property
    def config_store(self) -> Dict[str, Any]:
        cs = _section(self.raw, "config_store")
        return {
            "backend": str(cs.get("backend") or "yaml"),
            "unload_attempts": int(cs.get("unload_attempts", 5)),
            "unload_backoff": float(cs.get("unload_backoff", 0.5)),
            "settle_delay": float(cs.get("settle_delay", 0.2)),
        }

    @property
    def mutations(self) -> List[Dict[str, Any]]:
        value = self.raw.get("mutations") or []
        if not isinstance(value, list):
            raise ValidationFailure("'mutations' must be a list")
        return value

    @property
    def dependencies(self) -> Tuple[DependencySpec, ...]:
        return parse_dependency_specs(_section(self.raw, "dependencies").get("items"))

    @property
    def dependency_throttle(self) -> int:
        return int(_section(self.raw, "dependencies").get("throttle", 4))

    @property
    def dependency_batch_timeout(self) -> Optional[float]:
        value = _section(self.raw, "dependencies").get("batch_timeout", 1800)
        return float(value) if value is not None else None

    @property
    def dependency_repository(self) -> Dict[str, Any]:
        value = _section(self.raw, "dependencies").get("repository") or {"kind": "pip"}
        if isinstance(value, str):
            value = {"kind": value}
        return dict(value)

    @property
    def integrity(self) -> IntegrityPolicy:
        return IntegrityPolicy.from_mapping(_section(self.raw, "dependencies").get("integrity"))

    @property
    def diagnostics(self) -> Dict[str, Any]:
        d = _section(self.raw, "diagnostics")
        exports = []
        for i, e in enumerate(d.get("exports") or []):
            if not isinstance(e, dict) or not e.get("alias") or not e.get("hive"):
                raise ValidationFailure(f"diagnostics.exports[{i}] needs 'alias' and 'hive'")
            exports.append(StoreExport(alias=str(e["alias"]), hive=str(e["hive"])))
        return {
            "root": self._path(str(d.get("root") or (self.logs_dir / "diagnostics"))),
            "log_patterns": tuple(d.get("logs") or DEFAULT_LOG_PATTERNS),
            "config_patterns": tuple(d.get("config") or DEFAULT_CONFIG_PATTERNS),
            "store_exports": tuple(exports),
            "max_files": int(d.get("max_files", DEFAULT_MAX_FILES)),
            "max_file_bytes": int(d.get("max_file_bytes", DEFAULT_MAX_FILE_BYTES)),
            "max_listing_entries": int(d.get("max_listing_entries", DEFAULT_MAX_LISTING_ENTRIES)),
        }

    @property
    def optimize(self) -> Optional[Dict[str, Any]]:
        value = _section(self.raw, "outputs").get("optimize")
        if not value:
            return None
        return dict(value) if isinstance(value, dict) else {}

    @property
    def package_destination(self) -> Optional[Path]:
        value = _section(self.raw, "outputs").get("package")
        if isinstance(value, dict):
            value = value.get("destination")
        return self._path(str(value)) if value else None

    @property
    def package_options(self) -> Dict[str, Any]:
        value = _section(self.raw, "outputs").get("package")
        return {k: v for k, v in value.items() if k != "destination"} if isinstance(value, dict) else {}

    @property
    def preflight(self) -> Dict[str, Any]:
        p = _section(self.raw, "preflight")
        return {
            "require_root": bool(p.get("require_root", False)),
            "required_tools": tuple(p.get("required_tools") or ()),
            "min_free_bytes": int(p.get("min_free_bytes", 0)),
            "space_factor": float(p.get("space_factor", 3.0)),
        }

    def validate(self) -> "BuildConfig":
        """Evaluate every section once so bad values fail before the build starts."""

        names = [n for n, v in vars(BuildConfig).items() if isinstance(v, property)]
        for name in names:
            try:
                getattr(self, name)
            except ValidationFailure:
                raise
            except (TypeError, ValueError) as e:
                raise ValidationFailure(f"Invalid build config value for {name}: {e}") from e
        return self


def load_build_config(path: str | Path) -> BuildConfig:
    p = Path(path)
    if not p.exists():
        raise ValidationFailure(f"Build config not found: {path}")

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValidationFailure("build config must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValidationFailure(f"Malformed build config {p}: {e}") from e
    if not isinstance(raw, dict):
        raise ValidationFailure("build config must contain a mapping/object")

    return BuildConfig(raw=raw, base_dir=p.resolve().parent).validate()
