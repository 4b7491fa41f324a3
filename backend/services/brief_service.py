from __future__ import annotations

import logging
import uuid
from typing import Any

from services.errors import NotFound
from services.models import StoryBrief
from storage.fs_store import FSStore, now_iso

logger = logging.getLogger(__name__)


def brief_path(brief_id: str) -> str:
    return f"briefs/{brief_id}.yaml"


class BriefService:
    def __init__(self, store: FSStore) -> None:
        self.store = store

    def create_brief(self, payload: dict[str, Any]) -> dict[str, Any]:
        brief_id = f"brief_{uuid.uuid4().hex[:12]}"
        brief = StoryBrief.from_dict({**payload, "id": brief_id, "created_at": now_iso()})
        doc = {
            **brief.to_dict(),
            "status": "created",
            "rules_version": None,
            "override": None,
            "locked_by_draft_id": None,
            "last_draft_id": None,
        }
        doc = self.store.create_doc(brief_path(brief_id), doc)
        logger.info("created brief %s (age=%s goals=%s)", brief_id, brief.age_group, ",".join(brief.emotional_goals))
        return doc

    def get_brief(self, brief_id: str) -> dict[str, Any]:
        doc = self.store.read_yaml(brief_path(brief_id))
        if not doc:
            raise NotFound(f"brief {brief_id} not found")
        return doc

    def list_briefs(self) -> list[dict[str, Any]]:
        return [self.store.read_yaml(brief_path(b)) for b in self.store.list_ids("briefs", ".yaml")]

    @staticmethod
    def as_brief(doc: dict[str, Any]) -> StoryBrief:
        return StoryBrief.from_dict(doc)
