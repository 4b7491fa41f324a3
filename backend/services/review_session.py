from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from services.draft_lifecycle import APPROVED, EDITABLE, DraftLifecycle, session_path
from services.errors import (
    DraftImmutable,
    GenerationFailed,
    InvalidTransition,
    MessageInvalid,
    NotFound,
    ProposalClosed,
    ProposalStale,
    RevisionLimitReached,
    SessionForbidden,
)
from services.models import MAX_REVISIONS
from services.story_generator import StoryGenerator
from storage.fs_store import FSStore, now_iso

logger = logging.getLogger(__name__)

PROPOSED = "proposed"
ACCEPTED = "accepted"
REJECTED = "rejected"


def session_events(session_id: str) -> str:
    return f"sessions/{session_id}.events.jsonl"


def _find(items: list[dict[str, Any]], item_id: str) -> dict[str, Any] | None:
    return next((x for x in items if x.get("id") == item_id), None)


class ReviewSessionEngine:
    """Chat-style revision loop between one specialist and one draft."""

    def __init__(self, store: FSStore, lifecycle: DraftLifecycle, generator: StoryGenerator, proposal_timeout_s: float = 45.0) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.generator = generator
        self.proposal_timeout_s = proposal_timeout_s

    def get_session(self, session_id: str) -> dict[str, Any]:
        doc = self.store.read_json(session_path(session_id))
        if not doc:
            raise NotFound(f"review session {session_id} not found")
        doc.setdefault("messages", [])
        doc.setdefault("proposals", [])
        return doc

    def _sync_revision(self, session: dict[str, Any], draft: dict[str, Any]) -> dict[str, Any]:
        """Bring the session's revision count up to the draft's."""
        if session["revision_count"] == draft["revision_count"]:
            return session

        def mirror(s: dict[str, Any]) -> None:
            s["revision_count"] = max(s["revision_count"], draft["revision_count"])
            s["updated_at"] = now_iso()

        logger.info("session %s: revision count %s -> %s from draft %s", session["id"], session["revision_count"], draft["revision_count"], draft["id"])
        return self.store.compare_and_set(session_path(session["id"]), {}, mirror)

    def _open_session(self, session_id: str, specialist_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        session = self.get_session(session_id)
        if session["specialist_id"] != specialist_id:
            raise SessionForbidden(f"review session {session_id} belongs to another specialist", session_id=session_id)
        draft = self.lifecycle.get_draft(session["draft_id"])
        if draft["status"] == APPROVED:
            raise DraftImmutable(f"draft {draft['id']} is approved", field="status", expected=list(EDITABLE), actual=APPROVED)
        if session["status"] != "active":
            raise InvalidTransition(f"review session {session_id} is {session['status']}", field="status", expected="active", actual=session["status"])
        return self._sync_revision(session, draft), draft

    def _event(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        self.store.append_jsonl(session_events(session_id), {"event": event, "data": data})

    def create_review_session(self, draft_id: str, specialist_id: str) -> dict[str, Any]:
        if not specialist_id:
            raise MessageInvalid("specialist_id is required", field="specialist_id")
        draft = self.lifecycle.get_draft(draft_id)
        if draft["status"] == APPROVED:
            raise DraftImmutable(f"draft {draft_id} is approved", field="status", expected=list(EDITABLE), actual=APPROVED)
        if draft["status"] not in EDITABLE:
            raise InvalidTransition(f"draft {draft_id} is not ready for review", field="status", expected=list(EDITABLE), actual=draft["status"])
        if draft["revision_count"] >= MAX_REVISIONS:
            raise RevisionLimitReached(f"draft {draft_id} already has {MAX_REVISIONS} revisions; only approval remains", field="revision_count", expected=f"< {MAX_REVISIONS}", actual=draft["revision_count"])

        for sid in self.store.list_ids("sessions"):
            existing = self.store.read_json(session_path(sid))
            if existing.get("draft_id") == draft_id and existing.get("specialist_id") == specialist_id and existing.get("status") == "active":
                return self._sync_revision(self.get_session(sid), draft)

        session_id = f"session_{uuid.uuid4().hex[:12]}"
        ts = now_iso()
        doc = self.store.create_doc(session_path(session_id), {
            "id": session_id,
            "draft_id": draft_id,
            "specialist_id": specialist_id,
            "status": "active",
            "revision_count": draft["revision_count"],
            "messages": [],
            "proposals": [],
            "created_at": ts,
            "updated_at": ts,
        })
        self._event(session_id, "SESSION_CREATED", {"draft_id": draft_id, "specialist_id": specialist_id})
        logger.info("review session %s opened on draft %s by %s", session_id, draft_id, specialist_id)
        return doc

    async def send_message(self, session_id: str, content: str, specialist_id: str) -> dict[str, Any]:
        text = (content or "").strip()
        if not text:
            raise MessageInvalid("message content is required", field="content")
        session, draft = self._open_session(session_id, specialist_id)
        revision = draft["revision_count"]
        if revision >= MAX_REVISIONS:
            logger.warning("session %s: message rejected at revision cap", session_id)
            raise RevisionLimitReached(
                f"revision limit ({MAX_REVISIONS}) reached; the draft can only be approved",
                field="revision_count",
                expected=f"< {MAX_REVISIONS}",
                actual=revision,
            )

        message = {"id": f"msg_{uuid.uuid4().hex[:10]}", "role": "specialist", "content": text, "specialist_id": specialist_id, "created_at": now_iso()}

        def add_message(s: dict[str, Any]) -> None:
            s.setdefault("messages", []).append(message)
            s["updated_at"] = now_iso()

        session = self.store.compare_and_set(session_path(session_id), {"status": "active"}, add_message)
        self._event(session_id, "MESSAGE", {"message_id": message["id"]})

        history = [{"role": m["role"], "content": m["content"]} for m in session["messages"]]
        try:
            answer = await asyncio.wait_for(self.generator.propose_revision(draft["pages"], history), timeout=self.proposal_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("session %s: proposal generation timed out", session_id)
            raise GenerationFailed(f"proposal generation timed out after {self.proposal_timeout_s:g}s", session_id=session_id, message_id=message["id"])
        except GenerationFailed as e:
            logger.exception("session %s: proposal generation failed", session_id)
            e.details.setdefault("session_id", session_id)
            e.details.setdefault("message_id", message["id"])
            raise
        except Exception as e:
            logger.exception("session %s: proposal generation failed", session_id)
            raise GenerationFailed(str(e) or "proposal generation failed", session_id=session_id, message_id=message["id"]) from e

        proposal = {
            "id": f"prop_{uuid.uuid4().hex[:10]}",
            "message_id": message["id"],
            "suggested_pages": answer["suggested_pages"],
            "suggested_text": answer["suggested_text"],
            "rationale": answer["rationale"],
            "status": PROPOSED,
            "based_on_revision_count": revision,
            "created_at": now_iso(),
            "decided_at": None,
            "decided_by": None,
        }
        reply = {"id": f"msg_{uuid.uuid4().hex[:10]}", "role": "system", "content": "A revision proposal is ready for review.", "proposal_id": proposal["id"], "created_at": now_iso()}

        def add_proposal(s: dict[str, Any]) -> None:
            s.setdefault("proposals", []).append(proposal)
            s["messages"].append(reply)
            s["updated_at"] = now_iso()

        self.store.compare_and_set(session_path(session_id), {"status": "active"}, add_proposal)
        self._event(session_id, "PROPOSAL", {"proposal_id": proposal["id"], "based_on_revision_count": revision})
        return {"message": message, "proposal": proposal, "reply": reply}

    def apply_proposal(self, session_id: str, proposal_id: str, specialist_id: str) -> dict[str, Any]:
        session, draft = self._open_session(session_id, specialist_id)
        proposal = _find(session["proposals"], proposal_id)
        if proposal is None:
            raise NotFound(f"proposal {proposal_id} not found in session {session_id}")
        if proposal["status"] != PROPOSED:
            raise ProposalClosed(f"proposal {proposal_id} is already {proposal['status']}", field="status", expected=PROPOSED, actual=proposal["status"])
        revision = draft["revision_count"]
        if proposal["based_on_revision_count"] != revision:
            logger.warning("session %s: stale proposal %s (based on %s, now %s)", session_id, proposal_id, proposal["based_on_revision_count"], revision)
            raise ProposalStale(
                f"proposal {proposal_id} was generated against revision {proposal['based_on_revision_count']}, draft is at {revision}",
                field="based_on_revision_count",
                expected=revision,
                actual=proposal["based_on_revision_count"],
            )

        # the draft write is the serialisation point: a concurrent apply fails here
        draft = self.lifecycle.apply_revision(session["draft_id"], proposal["suggested_pages"], expected_revision=revision, by=specialist_id)

        def accept(s: dict[str, Any]) -> None:
            p = _find(s["proposals"], proposal_id)
            p.update(status=ACCEPTED, decided_at=now_iso(), decided_by=specialist_id)
            s["revision_count"] = max(s["revision_count"], draft["revision_count"])
            s["updated_at"] = now_iso()

        session = self.store.compare_and_set(session_path(session_id), {}, accept)
        self._event(session_id, "PROPOSAL_APPLIED", {"proposal_id": proposal_id, "revision_count": draft["revision_count"]})
        logger.info("session %s: proposal %s applied, revision %s", session_id, proposal_id, draft["revision_count"])
        return {"draft": draft, "session": session, "proposal": _find(session["proposals"], proposal_id)}

    def reject_proposal(self, session_id: str, proposal_id: str, specialist_id: str) -> dict[str, Any]:
        self._open_session(session_id, specialist_id)

        def reject(s: dict[str, Any]) -> None:
            p = _find(s.get("proposals", []), proposal_id)
            if p is None:
                raise NotFound(f"proposal {proposal_id} not found in session {session_id}")
            if p["status"] != PROPOSED:
                raise ProposalClosed(f"proposal {proposal_id} is already {p['status']}", field="status", expected=PROPOSED, actual=p["status"])
            p.update(status=REJECTED, decided_at=now_iso(), decided_by=specialist_id)
            s["updated_at"] = now_iso()

        session = self.store.compare_and_set(session_path(session_id), {"status": "active"}, reject)
        self._event(session_id, "PROPOSAL_REJECTED", {"proposal_id": proposal_id})
        return _find(session["proposals"], proposal_id)
