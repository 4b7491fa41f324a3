from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml
from filelock import FileLock

from services.errors import ConflictError, NotFound

STORE_SUBDIRS = ["rulesets", "settings", "briefs", "contracts", "drafts", "sessions"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, allow_unicode=True, sort_keys=False)


def _replace_text(path: Path, text: str) -> None:
    """Write via a sibling temp file so readers never see a partial document."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _load_yaml(text: str) -> Any:
    if not text.strip():
        return {}
    return yaml.safe_load(text) or {}


@dataclass
class FSStore:
    data_dir: Path

    def __post_init__(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for s in STORE_SUBDIRS:
            (self.data_dir / s).mkdir(exist_ok=True)

    def _safe_path(self, rel: str) -> Path:
        base = self.data_dir.resolve()
        target = (base / rel).resolve()
        if not str(target).startswith(str(base)):
            raise ValueError("Path traversal blocked")
        return target

    def _lock(self, path: Path) -> FileLock:
        return FileLock(str(path) + ".lock")

    def exists(self, rel: str) -> bool:
        return self._safe_path(rel).exists()

    def read_yaml(self, rel: str) -> dict[str, Any]:
        path = self._safe_path(rel)
        if not path.exists():
            return {}
        return _load_yaml(path.read_text(encoding="utf-8"))

    def write_yaml(self, rel: str, data: dict[str, Any]) -> None:
        path = self._safe_path(rel)
        path.parent.mkdir(parents=True, exist_ok=True)
        _replace_text(path, _dump_yaml(data))

    def read_json(self, rel: str) -> dict[str, Any]:
        path = self._safe_path(rel)
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def write_json(self, rel: str, data: Any) -> None:
        path = self._safe_path(rel)
        path.parent.mkdir(parents=True, exist_ok=True)
        _replace_text(path, json.dumps(data, ensure_ascii=False, indent=2))

    def read_jsonl(self, rel: str) -> list[dict[str, Any]]:
        path = self._safe_path(rel)
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text(encoding='utf-8').splitlines() if line.strip()]

    def append_jsonl(self, rel: str, item: dict[str, Any]) -> None:
        path = self._safe_path(rel)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock(path):
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps({**item, "ts": item.get("ts", now_iso())}, ensure_ascii=False) + "\n")

    def list_ids(self, collection: str, suffix: str = ".json") -> list[str]:
        cdir = self._safe_path(collection)
        if not cdir.exists():
            return []
        out = []
        for f in cdir.iterdir():
            name = f.name
            # skip sidecars such as <id>.contract.json or <id>.events.jsonl
            if not name.endswith(suffix) or name.count(".") != suffix.count("."):
                continue
            out.append(name[: -len(suffix)])
        return sorted(out)

    # Documents written through the methods below carry an integer `_rev`
    # that is bumped on every write.

    def _read_doc(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        text = path.read_text(encoding="utf-8")
        if path.suffix in {".yaml", ".yml"}:
            return _load_yaml(text)
        return json.loads(text) if text.strip() else {}

    def _write_doc(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix in {".yaml", ".yml"}:
            _replace_text(path, _dump_yaml(data))
        else:
            _replace_text(path, json.dumps(data, ensure_ascii=False, indent=2))

    def create_doc(self, rel: str, data: dict[str, Any]) -> dict[str, Any]:
        path = self._safe_path(rel)
        with self._lock(path):
            if path.exists():
                raise ConflictError(f"document already exists: {rel}", field="_rev", expected=None, actual=self._read_doc(path).get("_rev"))
            doc = {**data, "_rev": 1}
            self._write_doc(path, doc)
        return doc

    def compare_and_set(
        self,
        rel: str,
        expect: dict[str, Any],
        mutate: Callable[[dict[str, Any]], dict[str, Any] | None],
    ) -> dict[str, Any]:
        """Atomically check `expect` against the stored document and write `mutate(doc)`.

        `mutate` may change the dict in place or return a replacement. Any field in
        `expect` that differs from the stored value aborts the write with a
        ConflictError naming the field and both values.
        """
        path = self._safe_path(rel)
        with self._lock(path):
            doc = self._read_doc(path)
            if not doc:
                raise NotFound(f"document not found: {rel}")
            for key, want in expect.items():
                have = doc.get(key)
                if have != want:
                    raise ConflictError(
                        f"{rel}: expected {key}={want!r}, found {have!r}",
                        field=key,
                        expected=want,
                        actual=have,
                    )
            updated = mutate(doc)
            if updated is None:
                updated = doc
            updated["_rev"] = int(doc.get("_rev", 0)) + 1
            self._write_doc(path, updated)
        return updated
