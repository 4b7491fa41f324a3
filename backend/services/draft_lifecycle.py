"""Draft state machine.

    draft_generating -> draft_generated | failed
    failed           -> draft_generating           (explicit retry)
    draft_generated  -> editing                    (explicit, or on save / applied revision)
    editing          -> draft_generated            (cancel, only with nothing committed)
    draft_generated | editing -> approved          (terminal)

Every transition is a single compare-and-set on the draft document keyed on
the status (and revision count where it matters) read at transition time.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from services.brief_service import BriefService, brief_path
from services.contract_service import ContractService
from services.errors import (
    ContractInvalid,
    DraftImmutable,
    GenerationFailed,
    InvalidTransition,
    NotFound,
    PagesInvalid,
    RevisionLimitReached,
    ValidationError,
)
from services.models import MAX_REVISIONS
from services.story_generator import StoryGenerator
from storage.fs_store import FSStore, now_iso

logger = logging.getLogger(__name__)

DRAFT_GENERATING = "draft_generating"
DRAFT_GENERATED = "draft_generated"
FAILED = "failed"
EDITING = "editing"
APPROVED = "approved"

EDITABLE = (DRAFT_GENERATED, EDITING)
DRAFT_LENGTHS = ("short", "medium", "long")


def draft_path(draft_id: str) -> str:
    return f"drafts/{draft_id}.json"


def draft_events(draft_id: str) -> str:
    return f"drafts/{draft_id}.events.jsonl"


def session_path(session_id: str) -> str:
    return f"sessions/{session_id}.json"


def validate_pages(pages: Any) -> list[dict[str, Any]]:
    if not isinstance(pages, list) or not pages:
        raise PagesInvalid("pages must be a non-empty list")
    out = []
    for i, p in enumerate(pages, start=1):
        if not isinstance(p, dict):
            raise PagesInvalid(f"page {i} must be an object")
        number = p.get("page_number", i)
        if number != i:
            raise PagesInvalid(f"page numbers must run 1..{len(pages)} in order", page=i, page_number=number)
        text = p.get("text")
        if not isinstance(text, str) or not text.strip():
            raise PagesInvalid(f"page {i} has no text", page=i)
        out.append({
            "page_number": i,
            "text": text,
            "image_prompt": str(p.get("image_prompt") or ""),
            "emotional_tone": str(p.get("emotional_tone") or ""),
        })
    return out


class DraftLifecycle:
    def __init__(
        self,
        store: FSStore,
        briefs: BriefService,
        contracts: ContractService,
        generator: StoryGenerator,
        generation_timeout_s: float = 60.0,
        default_language: str = "ar",
    ) -> None:
        self.store = store
        self.briefs = briefs
        self.contracts = contracts
        self.generator = generator
        self.generation_timeout_s = generation_timeout_s
        self.default_language = default_language

    def get_draft(self, draft_id: str) -> dict[str, Any]:
        doc = self.store.read_json(draft_path(draft_id))
        if not doc:
            raise NotFound(f"draft {draft_id} not found")
        return doc

    def draft_contract(self, draft_id: str) -> dict[str, Any]:
        self.get_draft(draft_id)
        return self.store.read_json(f"drafts/{draft_id}.contract.json")

    def list_events(self, draft_id: str) -> list[dict[str, Any]]:
        self.get_draft(draft_id)
        return self.store.read_jsonl(draft_events(draft_id))

    def _log(self, draft_id: str, event: str, frm: str | None, to: str, by: str | None, **extra: Any) -> None:
        self.store.append_jsonl(draft_events(draft_id), {"event": event, "from": frm, "to": to, "by": by, **extra})
        logger.info("draft %s: %s %s -> %s", draft_id, event, frm, to)

    def _transition(
        self,
        draft_id: str,
        allowed_from: tuple[str, ...],
        mutate: Callable[[dict[str, Any]], None],
        event: str,
        by: str | None,
        guard: Callable[[dict[str, Any]], None] | None = None,
    ) -> dict[str, Any]:
        doc = self.get_draft(draft_id)
        status = doc["status"]
        if status == APPROVED:
            logger.warning("draft %s: %s rejected, draft is approved", draft_id, event)
            raise DraftImmutable(f"draft {draft_id} is approved and cannot change", field="status", expected=list(allowed_from), actual=status)
        if status not in allowed_from:
            logger.warning("draft %s: %s rejected from status %s", draft_id, event, status)
            raise InvalidTransition(f"cannot {event} a draft in status {status}", field="status", expected=list(allowed_from), actual=status)

        def apply(d: dict[str, Any]) -> None:
            if guard is not None:
                guard(d)
            mutate(d)
            d["updated_at"] = now_iso()

        updated = self.store.compare_and_set(draft_path(draft_id), {"status": status, "revision_count": doc["revision_count"]}, apply)
        self._log(draft_id, event, status, updated["status"], by)
        return updated

    async def generate_draft(
        self,
        brief_id: str,
        requested_by: str | None = None,
        length: str = "medium",
        tone: str = "calm",
        language: str | None = None,
    ) -> dict[str, Any]:
        if length not in DRAFT_LENGTHS:
            raise ValidationError(f"length must be one of {', '.join(DRAFT_LENGTHS)}", field="length")
        if not tone or not tone.strip():
            raise ValidationError("tone is required", field="tone")
        contract = self.contracts.preview_contract(brief_id)
        if contract.errors:
            raise ContractInvalid(
                f"contract for brief {brief_id} has {len(contract.errors)} error(s)",
                errors=[{"code": e.code, "message": e.message} for e in contract.errors],
            )

        brief = self.store.compare_and_set(
            brief_path(brief_id), {"status": "created"}, lambda d: d.update(status=DRAFT_GENERATING, updated_at=now_iso())
        )
        config = {
            "language": language or self.default_language,
            "target_age_group": brief["age_group"],
            "length": length,
            "tone": tone.strip(),
        }
        try:
            draft_id = self._open_draft(brief, config, requested_by)
        except Exception:
            self.store.compare_and_set(brief_path(brief_id), {"status": DRAFT_GENERATING}, lambda d: d.update(status="created"))
            raise
        self.store.write_json(f"drafts/{draft_id}.contract.json", contract.to_dict())

        try:
            result = await asyncio.wait_for(self.generator.generate(contract.to_dict(), config), timeout=self.generation_timeout_s)
            pages = validate_pages(result.get("pages"))
            title = str(result.get("title") or "").strip()
            if not title:
                raise GenerationFailed("generated draft has no title")
        except asyncio.TimeoutError:
            message = f"generation timed out after {self.generation_timeout_s:g}s"
            logger.warning("draft %s: %s", draft_id, message)
            self._fail(brief_id, draft_id, message)
            raise GenerationFailed(message, draft_id=draft_id)
        except asyncio.CancelledError:
            logger.warning("draft %s: generation cancelled", draft_id)
            self._fail(brief_id, draft_id, "generation cancelled")
            raise
        except Exception as e:
            logger.exception("draft %s: generation failed", draft_id)
            self._fail(brief_id, draft_id, str(e) or e.__class__.__name__)
            if isinstance(e, GenerationFailed):
                e.details.setdefault("draft_id", draft_id)
                raise
            raise GenerationFailed(str(e) or "generation failed", draft_id=draft_id) from e

        def done(d: dict[str, Any]) -> None:
            d.update(status=DRAFT_GENERATED, title=title, pages=pages, error=None, updated_at=now_iso())

        draft = self.store.compare_and_set(draft_path(draft_id), {"status": DRAFT_GENERATING}, done)
        self.store.compare_and_set(
            brief_path(brief_id),
            {"status": DRAFT_GENERATING},
            lambda d: d.update(status=DRAFT_GENERATED, locked_by_draft_id=draft_id, updated_at=now_iso()),
        )
        self._log(draft_id, "generated", DRAFT_GENERATING, DRAFT_GENERATED, requested_by, pages=len(pages))
        return draft

    def _open_draft(self, brief: dict[str, Any], config: dict[str, Any], requested_by: str | None) -> str:
        last = brief.get("last_draft_id")
        if last:
            prior = self.store.read_json(draft_path(last))
            if prior.get("status") == FAILED:
                self.store.compare_and_set(
                    draft_path(last),
                    {"status": FAILED},
                    lambda d: d.update(status=DRAFT_GENERATING, generation_config=config, error=None, attempts=d.get("attempts", 1) + 1, updated_at=now_iso()),
                )
                self._log(last, "retry", FAILED, DRAFT_GENERATING, requested_by)
                return last

        draft_id = f"draft_{uuid.uuid4().hex[:12]}"
        ts = now_iso()
        self.store.create_doc(draft_path(draft_id), {
            "id": draft_id,
            "brief_id": brief["id"],
            "created_by": requested_by,
            "rules_version": brief.get("rules_version"),
            "status": DRAFT_GENERATING,
            "revision_count": 0,
            "generation_config": config,
            "title": None,
            "pages": [],
            "error": None,
            "attempts": 1,
            "edit_base_revision": None,
            "edit_dirty": False,
            "created_at": ts,
            "updated_at": ts,
            "approved_at": None,
            "approved_by": None,
        })
        self.store.compare_and_set(brief_path(brief["id"]), {"status": DRAFT_GENERATING}, lambda d: d.update(last_draft_id=draft_id))
        self._log(draft_id, "generation_requested", None, DRAFT_GENERATING, requested_by)
        return draft_id

    def _fail(self, brief_id: str, draft_id: str, message: str) -> None:
        self.store.compare_and_set(
            draft_path(draft_id),
            {"status": DRAFT_GENERATING},
            lambda d: d.update(status=FAILED, error={"message": message}, updated_at=now_iso()),
        )
        # the brief is released so a fresh attempt can be made
        self.store.compare_and_set(brief_path(brief_id), {"status": DRAFT_GENERATING}, lambda d: d.update(status="created", updated_at=now_iso()))
        self._log(draft_id, "generation_failed", DRAFT_GENERATING, FAILED, None, message=message)

    def enter_edit_mode(self, draft_id: str, by: str | None = None) -> dict[str, Any]:
        doc = self.get_draft(draft_id)
        if doc["status"] == EDITING:
            return doc

        def start(d: dict[str, Any]) -> None:
            d.update(status=EDITING, edit_base_revision=d["revision_count"], edit_dirty=False)

        return self._transition(draft_id, (DRAFT_GENERATED,), start, "enter_edit", by)

    def cancel_edit_mode(self, draft_id: str, by: str | None = None) -> dict[str, Any]:
        def nothing_committed(d: dict[str, Any]) -> None:
            if d.get("edit_dirty") or d["revision_count"] != d.get("edit_base_revision"):
                raise InvalidTransition(
                    f"draft {draft_id} has committed changes since edit mode began",
                    field="revision_count",
                    expected=d.get("edit_base_revision"),
                    actual=d["revision_count"],
                    edit_dirty=bool(d.get("edit_dirty")),
                )

        def stop(d: dict[str, Any]) -> None:
            d.update(status=DRAFT_GENERATED, edit_base_revision=None, edit_dirty=False)

        return self._transition(draft_id, (EDITING,), stop, "cancel_edit", by, guard=nothing_committed)

    def update_draft(self, draft_id: str, title: str | None = None, pages: Any = None, by: str | None = None) -> dict[str, Any]:
        new_pages = validate_pages(pages) if pages is not None else None
        if title is not None and not title.strip():
            raise ValidationError("title must not be empty", field="title")

        def save(d: dict[str, Any]) -> None:
            if d["status"] != EDITING:
                d["edit_base_revision"] = d["revision_count"]
            d["status"] = EDITING
            d["edit_dirty"] = True
            if title is not None:
                d["title"] = title.strip()
            if new_pages is not None:
                d["pages"] = new_pages

        return self._transition(draft_id, EDITABLE, save, "update", by)

    def apply_revision(self, draft_id: str, pages: list[dict[str, Any]], expected_revision: int, by: str | None = None) -> dict[str, Any]:
        """Replace the pages with an accepted proposal and count one revision."""
        new_pages = validate_pages(pages)
        doc = self.get_draft(draft_id)
        status = doc["status"]
        if status == APPROVED:
            raise DraftImmutable(f"draft {draft_id} is approved and cannot change", field="status", expected=list(EDITABLE), actual=status)
        if status not in EDITABLE:
            raise InvalidTransition(f"cannot revise a draft in status {status}", field="status", expected=list(EDITABLE), actual=status)
        if doc["revision_count"] >= MAX_REVISIONS:
            raise RevisionLimitReached(f"draft {draft_id} already has {MAX_REVISIONS} revisions", field="revision_count", expected=f"< {MAX_REVISIONS}", actual=doc["revision_count"])

        def revise(d: dict[str, Any]) -> None:
            if d["status"] != EDITING:
                d["edit_base_revision"] = d["revision_count"]
            d.update(status=EDITING, pages=new_pages, revision_count=d["revision_count"] + 1, updated_at=now_iso())

        updated = self.store.compare_and_set(draft_path(draft_id), {"status": status, "revision_count": expected_revision}, revise)
        self._log(draft_id, "revision_applied", status, EDITING, by, revision_count=updated["revision_count"])
        return updated

    def approve_draft(self, draft_id: str, specialist_id: str, session_id: str | None = None) -> dict[str, Any]:
        if not specialist_id:
            raise ValidationError("specialist_id is required", field="specialist_id")
        session = None
        if session_id:
            session = self.store.read_json(session_path(session_id))
            if not session or session.get("draft_id") != draft_id:
                raise NotFound(f"review session {session_id} not found for draft {draft_id}")

        def within_cap(d: dict[str, Any]) -> None:
            if d["revision_count"] > MAX_REVISIONS:
                raise InvalidTransition(f"draft {draft_id} exceeds the revision cap", field="revision_count", expected=f"<= {MAX_REVISIONS}", actual=d["revision_count"])

        def approve(d: dict[str, Any]) -> None:
            d.update(status=APPROVED, approved_at=now_iso(), approved_by=specialist_id, edit_base_revision=None, edit_dirty=False)

        updated = self._transition(draft_id, EDITABLE, approve, "approve", specialist_id, guard=within_cap)
        if session is not None and session.get("status") == "active":
            self.store.compare_and_set(session_path(session_id), {"status": "active"}, lambda s: s.update(status="closed", closed_at=now_iso()))
        return updated
