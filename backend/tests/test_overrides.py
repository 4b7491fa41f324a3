import asyncio

import pytest

from conftest import brief_payload
from services.contract_service import contract_path
from services.errors import BriefLocked, OverrideRejected


def test_override_with_eligible_tool_is_recorded(studio):
    brief = studio.briefs.create_brief(brief_payload())
    contract = studio.contracts.apply_override(brief["id"], "counting", reason="counting steps helps at bedtime")
    assert contract.allowed_coping_tools == ["counting"]
    assert contract.override_used is True

    stored = studio.briefs.get_brief(brief["id"])
    assert stored["override"]["coping_tool_id"] == "counting"
    assert stored["rules_version"] == "v1"
    assert studio.contracts.stored_contract(brief["id"])["allowed_coping_tools"] == ["counting"]
    assert studio.contracts.preview_contract(brief["id"]).allowed_coping_tools == ["counting"]


def test_repeated_override_is_idempotent(studio):
    brief = studio.briefs.create_brief(brief_payload())
    first = studio.contracts.apply_override(brief["id"], "counting", reason="r")
    second = studio.contracts.apply_override(brief["id"], "counting")
    assert first.to_dict() == second.to_dict()
    assert len(studio.contracts.override_history(brief["id"])) == 1


def test_rejected_override_leaves_preview_untouched(studio):
    brief = studio.briefs.create_brief(brief_payload())
    studio.contracts.preview_contract(brief["id"])
    before = studio.store.read_json(contract_path(brief["id"]))

    with pytest.raises(OverrideRejected) as exc:
        studio.contracts.apply_override(brief["id"], "magic_wand")
    assert exc.value.details["coping_tool_id"] == "magic_wand"

    assert studio.store.read_json(contract_path(brief["id"])) == before
    assert studio.briefs.get_brief(brief["id"])["override"] is None
    assert studio.contracts.override_history(brief["id"]) == []


def test_override_rejected_for_age_group(studio):
    brief = studio.briefs.create_brief(brief_payload(age_group="0_3"))
    with pytest.raises(OverrideRejected):
        studio.contracts.apply_override(brief["id"], "counting")


def test_clear_override_restores_goal_tools(studio):
    brief = studio.briefs.create_brief(brief_payload())
    studio.contracts.apply_override(brief["id"], "counting")
    contract = studio.contracts.clear_override(brief["id"])
    assert contract.allowed_coping_tools == ["balloon_breathing", "safe_object", "coping_phrase"]
    assert contract.override_used is False
    events = [e["event"] for e in studio.contracts.override_history(brief["id"])]
    assert events == ["override_applied", "override_cleared"]


def test_unsaved_brief_preview(studio):
    contract = studio.contracts.preview_brief(brief_payload(ending_style="open_ended"))
    assert contract.status == "invalid"
    assert studio.briefs.list_briefs() == []


def test_brief_locks_once_a_draft_exists(studio):
    brief = studio.briefs.create_brief(brief_payload())
    asyncio.run(studio.lifecycle.generate_draft(brief["id"]))
    with pytest.raises(BriefLocked):
        studio.contracts.apply_override(brief["id"], "counting")
    with pytest.raises(BriefLocked):
        studio.contracts.clear_override(brief["id"])
