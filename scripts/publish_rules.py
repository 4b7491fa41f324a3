#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "backend"))

from services.app_config import AppConfig  # noqa: E402
from services.errors import StudioError  # noqa: E402
from services.ruleset_service import TABLES, RuleSetService  # noqa: E402
from storage.fs_store import FSStore  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Publish a clinical rule set version from a YAML file.")
    parser.add_argument("file", type=Path, help="rule set YAML (age_rules, goal_mappings, coping_tools, ...)")
    parser.add_argument("--version", help="version tag; defaults to the file's `version` key")
    parser.add_argument("--notes", default=None)
    parser.add_argument("--make-default", action="store_true", help="point new briefs at this version")
    parser.add_argument("--data-dir", type=Path, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    data = yaml.safe_load(args.file.read_text(encoding="utf-8")) or {}
    version = args.version or data.get("version")
    if not version:
        parser.error("no --version given and the file has no `version` key")

    store = FSStore(args.data_dir or AppConfig.from_env().data_dir)
    service = RuleSetService(store)
    try:
        service.publish(version, {t: data.get(t, {}) for t in TABLES}, notes=args.notes if args.notes is not None else data.get("notes", ""))
        if args.make_default:
            service.set_default(version)
    except StudioError as e:
        print(f"{e.code}: {e.message}", file=sys.stderr)
        for problem in e.details.get("problems", []):
            print(f"  - {problem}", file=sys.stderr)
        return 1
    print(f"Published rule set {version}" + (" (default)" if args.make_default else ""))
    return 0


if __name__ == "__main__":
    sys.exit(main())
