from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from services.errors import ConflictError, InvalidTransition, NotFound, RuleSetImmutable, ValidationError
from services.models import RuleSetVersion
from storage.fs_store import FSStore, now_iso

logger = logging.getLogger(__name__)

BUNDLED_RULES = Path(__file__).resolve().parents[1] / "rules" / "clinical_rules_v1.yaml"
POINTER = "settings/rules.yaml"
VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,63}$")
TABLES = ("age_rules", "goal_mappings", "coping_tools", "ending_rules", "sensitivity_rules", "exclusions")


class RuleSetService:
    """Immutable, versioned clinical rule bundles plus the default-version pointer."""

    def __init__(self, store: FSStore) -> None:
        self.store = store
        self._cache: dict[str, RuleSetVersion] = {}

    def _path(self, version: str) -> str:
        if not VERSION_RE.match(version or ""):
            raise ValidationError(f"invalid rule set version tag: {version!r}")
        return f"rulesets/{version}.yaml"

    def _pointer(self) -> dict[str, Any]:
        if not self.store.exists(POINTER):
            try:
                self.store.create_doc(POINTER, {"default_version": None, "statuses": {}, "updated_at": now_iso()})
            except ConflictError:
                pass
        ptr = self.store.read_yaml(POINTER)
        ptr.setdefault("statuses", {})
        return ptr

    def publish(self, version: str, tables: dict[str, Any], notes: str = "") -> RuleSetVersion:
        rel = self._path(version)
        data = {"version": version, "notes": notes, "created_at": now_iso()}
        data.update({t: tables.get(t, {}) for t in TABLES})
        rules = RuleSetVersion.from_dict(data)
        self._pointer()
        try:
            self.store.create_doc(rel, data)
        except ConflictError:
            raise RuleSetImmutable(f"rule set {version} already published; publish a new version instead", field="version", expected=None, actual=version)

        def mark(ptr: dict[str, Any]) -> None:
            ptr.setdefault("statuses", {})[version] = "active"
            ptr["updated_at"] = now_iso()

        self.store.compare_and_set(POINTER, {}, mark)
        logger.info("published rule set %s", version)
        return rules

    def get(self, version: str) -> RuleSetVersion:
        status = self._pointer()["statuses"].get(version, "active")
        cached = self._cache.get(version)
        if cached is not None and cached.status == status:
            return cached
        data = self.store.read_yaml(self._path(version))
        if not data:
            raise NotFound(f"rule set {version} not found")
        rules = RuleSetVersion.from_dict(data, status=status)
        self._cache[version] = rules
        return rules

    def list_versions(self) -> list[dict[str, Any]]:
        ptr = self._pointer()
        out = []
        for version in self.store.list_ids("rulesets", ".yaml"):
            data = self.store.read_yaml(self._path(version))
            out.append({
                "version": version,
                "status": ptr["statuses"].get(version, "active"),
                "created_at": data.get("created_at"),
                "notes": data.get("notes", ""),
                "is_default": ptr.get("default_version") == version,
            })
        return out

    def default_version(self) -> str:
        version = self._pointer().get("default_version")
        if not version:
            raise NotFound("no default rule set version configured")
        return version

    def set_default(self, version: str) -> dict[str, Any]:
        rules = self.get(version)
        if rules.status == "retired":
            raise InvalidTransition(f"rule set {version} is retired", field="status", expected="active", actual="retired")

        def point(ptr: dict[str, Any]) -> None:
            ptr["default_version"] = version
            ptr["updated_at"] = now_iso()

        self._pointer()
        ptr = self.store.compare_and_set(POINTER, {}, point)
        logger.info("default rule set is now %s", version)
        return ptr

    def retire(self, version: str) -> dict[str, Any]:
        self.get(version)
        ptr = self._pointer()
        if ptr.get("default_version") == version:
            raise InvalidTransition(f"rule set {version} is the default and cannot be retired", field="default_version", expected=None, actual=version)

        def mark(p: dict[str, Any]) -> None:
            p["statuses"][version] = "retired"
            p["updated_at"] = now_iso()

        # default_version is re-checked under the lock
        ptr = self.store.compare_and_set(POINTER, {"default_version": ptr.get("default_version")}, mark)
        logger.info("retired rule set %s", version)
        return ptr

    def seed_defaults(self, path: Path = BUNDLED_RULES) -> str:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        version = data["version"]
        if not self.store.exists(self._path(version)):
            self.publish(version, data, notes=data.get("notes", ""))
        if not self._pointer().get("default_version"):
            self.set_default(version)
        return version
