import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import httpx
import pytest

from conftest import Studio, brief_payload
from services.errors import (
    ConflictError,
    DraftImmutable,
    GenerationFailed,
    MessageInvalid,
    ProposalClosed,
    ProposalStale,
    RevisionLimitReached,
    SessionForbidden,
)
from services.llm_gateway import LLMGateway
from services.story_generator import StoryGenerator


class SlowProposer(StoryGenerator):
    def __init__(self):
        super().__init__(LLMGateway(), profile={"provider": "mock"})

    async def propose_revision(self, pages, history):
        await asyncio.sleep(1)
        return await super().propose_revision(pages, history)


class UnreachableProposer(StoryGenerator):
    def __init__(self):
        super().__init__(LLMGateway(), profile={"provider": "mock"})

    async def propose_revision(self, pages, history):
        raise httpx.ConnectError("connection refused")


def new_draft(studio) -> dict:
    brief = studio.briefs.create_brief(brief_payload())
    return asyncio.run(studio.lifecycle.generate_draft(brief["id"]))


def ask(studio, session_id: str, text: str = "Please make the ending warmer", who: str = "specialist_1") -> dict:
    return asyncio.run(studio.review.send_message(session_id, text, who))


def test_three_revisions_then_only_approval(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    for n in range(1, 4):
        proposal = ask(studio, session["id"])["proposal"]
        assert proposal["based_on_revision_count"] == n - 1
        result = studio.review.apply_proposal(session["id"], proposal["id"], "specialist_1")
        assert result["draft"]["revision_count"] == n
        assert result["session"]["revision_count"] == n
        assert result["proposal"]["status"] == "accepted"

    with pytest.raises(RevisionLimitReached):
        ask(studio, session["id"])
    assert studio.lifecycle.get_draft(draft["id"])["pages"][-1]["text"].count("smiles warmly") == 3

    approved = studio.lifecycle.approve_draft(draft["id"], "specialist_1", session_id=session["id"])
    assert approved["status"] == "approved"
    assert approved["revision_count"] == 3
    assert studio.review.get_session(session["id"])["status"] == "closed"


def test_proposal_against_older_revision_is_stale(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    first = ask(studio, session["id"])["proposal"]
    studio.review.apply_proposal(session["id"], first["id"], "specialist_1")

    second = ask(studio, session["id"], "Shorter sentences please")["proposal"]
    third = ask(studio, session["id"], "Add the bear again")["proposal"]
    assert second["based_on_revision_count"] == third["based_on_revision_count"] == 1
    studio.review.apply_proposal(session["id"], second["id"], "specialist_1")

    with pytest.raises(ProposalStale) as exc:
        studio.review.apply_proposal(session["id"], third["id"], "specialist_1")
    assert exc.value.expected == 2
    assert exc.value.actual == 1
    assert studio.lifecycle.get_draft(draft["id"])["revision_count"] == 2


def test_concurrent_sessions_cannot_both_revise(studio):
    draft = new_draft(studio)
    a = studio.review.create_review_session(draft["id"], "specialist_a")
    b = studio.review.create_review_session(draft["id"], "specialist_b")
    pa = ask(studio, a["id"], who="specialist_a")["proposal"]
    pb = ask(studio, b["id"], who="specialist_b")["proposal"]

    studio.review.apply_proposal(a["id"], pa["id"], "specialist_a")
    with pytest.raises(ConflictError):
        studio.review.apply_proposal(b["id"], pb["id"], "specialist_b")
    assert studio.lifecycle.get_draft(draft["id"])["revision_count"] == 1
    assert studio.review.get_session(b["id"])["proposals"][0]["status"] == "proposed"


def test_lagging_session_catches_up_with_draft(studio):
    draft = new_draft(studio)
    a = studio.review.create_review_session(draft["id"], "specialist_a")
    b = studio.review.create_review_session(draft["id"], "specialist_b")
    pa = ask(studio, a["id"], who="specialist_a")["proposal"]
    studio.review.apply_proposal(a["id"], pa["id"], "specialist_a")

    reopened = studio.review.create_review_session(draft["id"], "specialist_b")
    assert reopened["id"] == b["id"]
    assert reopened["revision_count"] == 1

    pb = ask(studio, b["id"], who="specialist_b")["proposal"]
    assert pb["based_on_revision_count"] == 1
    result = studio.review.apply_proposal(b["id"], pb["id"], "specialist_b")
    assert result["draft"]["revision_count"] == 2
    assert result["session"]["revision_count"] == 2


def test_lagging_session_respects_draft_revision_cap(studio):
    draft = new_draft(studio)
    a = studio.review.create_review_session(draft["id"], "specialist_a")
    b = studio.review.create_review_session(draft["id"], "specialist_b")
    for _ in range(3):
        p = ask(studio, a["id"], who="specialist_a")["proposal"]
        studio.review.apply_proposal(a["id"], p["id"], "specialist_a")
    with pytest.raises(RevisionLimitReached):
        ask(studio, b["id"], who="specialist_b")
    assert studio.review.get_session(b["id"])["revision_count"] == 3


def test_racing_applies_on_one_session_revise_once(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    first = ask(studio, session["id"])["proposal"]
    second = ask(studio, session["id"], "Shorter sentences please")["proposal"]
    assert first["based_on_revision_count"] == second["based_on_revision_count"] == 0

    barrier = threading.Barrier(2)

    def apply(proposal_id):
        barrier.wait()
        return studio.review.apply_proposal(session["id"], proposal_id, "specialist_1")

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(apply, p["id"]) for p in (first, second)]
    outcomes = [f.exception() for f in futures]

    assert sum(e is None for e in outcomes) == 1
    assert sum(isinstance(e, ConflictError) for e in outcomes) == 1
    assert studio.lifecycle.get_draft(draft["id"])["revision_count"] == 1
    statuses = sorted(p["status"] for p in studio.review.get_session(session["id"])["proposals"])
    assert statuses == ["accepted", "proposed"]


def test_proposal_actions_after_approval_through_session(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    proposal = ask(studio, session["id"])["proposal"]
    studio.lifecycle.approve_draft(draft["id"], "specialist_1", session_id=session["id"])

    with pytest.raises(DraftImmutable):
        studio.review.apply_proposal(session["id"], proposal["id"], "specialist_1")
    with pytest.raises(DraftImmutable):
        ask(studio, session["id"])
    with pytest.raises(DraftImmutable):
        studio.review.reject_proposal(session["id"], proposal["id"], "specialist_1")
    assert studio.lifecycle.get_draft(draft["id"])["revision_count"] == 0


def test_proposal_actions_after_approval_without_session(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    proposal = ask(studio, session["id"])["proposal"]
    studio.lifecycle.approve_draft(draft["id"], "specialist_2")
    assert studio.review.get_session(session["id"])["status"] == "active"

    with pytest.raises(DraftImmutable):
        studio.review.apply_proposal(session["id"], proposal["id"], "specialist_1")
    with pytest.raises(DraftImmutable):
        ask(studio, session["id"])
    assert studio.lifecycle.get_draft(draft["id"])["status"] == "approved"


def test_rejected_proposal_is_terminal(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    proposal = ask(studio, session["id"])["proposal"]
    rejected = studio.review.reject_proposal(session["id"], proposal["id"], "specialist_1")
    assert rejected["status"] == "rejected"
    with pytest.raises(ProposalClosed):
        studio.review.apply_proposal(session["id"], proposal["id"], "specialist_1")
    with pytest.raises(ProposalClosed):
        studio.review.reject_proposal(session["id"], proposal["id"], "specialist_1")
    assert studio.lifecycle.get_draft(draft["id"])["revision_count"] == 0


def test_session_belongs_to_its_specialist(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    assert studio.review.create_review_session(draft["id"], "specialist_1")["id"] == session["id"]
    with pytest.raises(SessionForbidden):
        ask(studio, session["id"], who="specialist_2")
    with pytest.raises(MessageInvalid):
        ask(studio, session["id"], text="   ")
    assert studio.review.get_session(session["id"])["messages"] == []


def test_message_and_reply_are_recorded(studio):
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    out = ask(studio, session["id"], "Make the mother present")
    stored = studio.review.get_session(session["id"])
    assert [m["role"] for m in stored["messages"]] == ["specialist", "system"]
    assert stored["messages"][1]["proposal_id"] == out["proposal"]["id"]
    assert "Make the mother present" in out["proposal"]["rationale"]
    assert out["proposal"]["suggested_text"].endswith("smiles warmly.")


def test_proposal_timeout_keeps_message(tmp_path: Path):
    studio = Studio(tmp_path / "data", generator=SlowProposer(), proposal_timeout_s=0.05)
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    with pytest.raises(GenerationFailed):
        ask(studio, session["id"])
    stored = studio.review.get_session(session["id"])
    assert [m["role"] for m in stored["messages"]] == ["specialist"]
    assert stored["proposals"] == []


def test_no_session_on_approved_draft(studio):
    draft = new_draft(studio)
    studio.lifecycle.approve_draft(draft["id"], "specialist_1")
    with pytest.raises(DraftImmutable):
        studio.review.create_review_session(draft["id"], "specialist_1")


def test_provider_error_surfaces_as_generation_failure(tmp_path: Path):
    studio = Studio(tmp_path / "data", generator=UnreachableProposer())
    draft = new_draft(studio)
    session = studio.review.create_review_session(draft["id"], "specialist_1")
    with pytest.raises(GenerationFailed) as exc:
        ask(studio, session["id"])
    assert isinstance(exc.value.__cause__, httpx.ConnectError)
    assert exc.value.details["session_id"] == session["id"]
    stored = studio.review.get_session(session["id"])
    assert exc.value.details["message_id"] == stored["messages"][0]["id"]
    assert stored["proposals"] == []
