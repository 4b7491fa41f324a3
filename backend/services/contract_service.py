from __future__ import annotations

import copy
import logging
from typing import Any

from services.brief_service import BriefService, brief_path
from services.contract_resolver import OVERRIDE_REJECTED, contract_cache_key, resolve
from services.errors import BriefLocked, ConflictError, OverrideRejected
from services.models import Contract, Override, StoryBrief
from services.ruleset_service import RuleSetService
from storage.fs_store import FSStore, now_iso

logger = logging.getLogger(__name__)


def contract_path(brief_id: str) -> str:
    return f"contracts/{brief_id}.json"


def overrides_log(brief_id: str) -> str:
    return f"briefs/{brief_id}.overrides.jsonl"


class ContractService:
    """Brief-facing wrapper around the resolver: version pinning, previews, overrides."""

    def __init__(self, store: FSStore, rulesets: RuleSetService, briefs: BriefService) -> None:
        self.store = store
        self.rulesets = rulesets
        self.briefs = briefs
        self._memo: dict[tuple[str, str, str], Contract] = {}

    def _pin_version(self, brief_id: str, doc: dict[str, Any]) -> str:
        if doc.get("rules_version"):
            return doc["rules_version"]
        default = self.rulesets.default_version()
        try:
            self.store.compare_and_set(brief_path(brief_id), {"rules_version": None}, lambda d: d.update(rules_version=default))
        except ConflictError:
            # pinned concurrently; the stored pin wins
            return self.briefs.get_brief(brief_id)["rules_version"]
        logger.info("pinned brief %s to rule set %s", brief_id, default)
        return default

    def _resolve(self, brief: StoryBrief, version: str, override: Override | None) -> Contract:
        key = contract_cache_key(brief.id, version, override)
        cached = self._memo.get(key)
        if cached is None:
            cached = resolve(brief, self.rulesets.get(version), override)
            self._memo[key] = cached
        return copy.deepcopy(cached)

    def preview_contract(self, brief_id: str) -> Contract:
        doc = self.briefs.get_brief(brief_id)
        version = self._pin_version(brief_id, doc)
        contract = self._resolve(BriefService.as_brief(doc), version, Override.from_dict(doc.get("override")))
        self.store.write_json(contract_path(brief_id), contract.to_dict())
        if contract.errors:
            logger.warning("contract for brief %s has errors: %s", brief_id, ",".join(contract.error_codes()))
        return contract

    def preview_brief(self, payload: dict[str, Any], version: str | None = None) -> Contract:
        brief = StoryBrief.from_dict({**payload, "id": payload.get("id") or "preview"})
        return resolve(brief, self.rulesets.get(version or self.rulesets.default_version()))

    def stored_contract(self, brief_id: str) -> dict[str, Any]:
        return self.store.read_json(contract_path(brief_id))

    def _ensure_unlocked(self, doc: dict[str, Any]) -> None:
        if doc.get("status") != "created" or doc.get("locked_by_draft_id"):
            raise BriefLocked(
                f"brief {doc.get('id')} already has a draft in flight or generated",
                field="status",
                expected="created",
                actual=doc.get("status"),
            )

    def apply_override(self, brief_id: str, coping_tool_id: str, reason: str | None = None) -> Contract:
        doc = self.briefs.get_brief(brief_id)
        self._ensure_unlocked(doc)
        version = self._pin_version(brief_id, doc)
        doc = self.briefs.get_brief(brief_id)
        previous = Override.from_dict(doc.get("override"))
        same_tool = previous is not None and previous.coping_tool_id == coping_tool_id
        override = Override(
            coping_tool_id=coping_tool_id,
            reason=reason if reason is not None or not same_tool else previous.reason,
            applied_at=previous.applied_at if same_tool else now_iso(),
        )

        contract = resolve(BriefService.as_brief(doc), self.rulesets.get(version), override)
        rejected = [e for e in contract.errors if e.code == OVERRIDE_REJECTED]
        if rejected:
            logger.warning("override rejected for brief %s: %s", brief_id, rejected[0].message)
            raise OverrideRejected(rejected[0].message, coping_tool_id=coping_tool_id, rule_set_version=version)

        def record(d: dict[str, Any]) -> None:
            d["override"] = {"coping_tool_id": override.coping_tool_id, "reason": override.reason, "applied_at": override.applied_at}

        self.store.compare_and_set(brief_path(brief_id), {"_rev": doc["_rev"], "status": "created"}, record)
        if not same_tool:
            self.store.append_jsonl(overrides_log(brief_id), {
                "event": "override_applied",
                "coping_tool_id": coping_tool_id,
                "previous": previous.coping_tool_id if previous else None,
                "reason": reason,
                "rule_set_version": version,
            })
        self.store.write_json(contract_path(brief_id), contract.to_dict())
        logger.info("override %s applied to brief %s", coping_tool_id, brief_id)
        return contract

    def clear_override(self, brief_id: str) -> Contract:
        doc = self.briefs.get_brief(brief_id)
        self._ensure_unlocked(doc)
        previous = Override.from_dict(doc.get("override"))
        if previous is not None:
            self.store.compare_and_set(brief_path(brief_id), {"_rev": doc["_rev"], "status": "created"}, lambda d: d.update(override=None))
            self.store.append_jsonl(overrides_log(brief_id), {"event": "override_cleared", "previous": previous.coping_tool_id})
        return self.preview_contract(brief_id)

    def override_history(self, brief_id: str) -> list[dict[str, Any]]:
        self.briefs.get_brief(brief_id)
        return self.store.read_jsonl(overrides_log(brief_id))
