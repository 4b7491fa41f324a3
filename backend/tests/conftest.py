from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from services.brief_service import BriefService
from services.contract_service import ContractService
from services.draft_lifecycle import DraftLifecycle
from services.llm_gateway import LLMGateway
from services.review_session import ReviewSessionEngine
from services.ruleset_service import RuleSetService
from services.story_generator import StoryGenerator
from storage.fs_store import FSStore


def brief_payload(**overrides) -> dict:
    payload = {
        "topic": "Dark",
        "situation": "Bedtime",
        "age_group": "3_6",
        "emotional_goals": ["reduce_fear"],
        "sensitivity": "high",
        "ending_style": "empowering",
        "created_by": "therapist_1",
    }
    payload.update(overrides)
    return payload


class Studio:
    """All services wired over one temporary store."""

    def __init__(self, data_dir: Path, generator: StoryGenerator | None = None, generation_timeout_s: float = 5.0, proposal_timeout_s: float = 5.0):
        self.store = FSStore(data_dir)
        self.rulesets = RuleSetService(self.store)
        self.rulesets.seed_defaults()
        self.briefs = BriefService(self.store)
        self.contracts = ContractService(self.store, self.rulesets, self.briefs)
        self.generator = generator or StoryGenerator(LLMGateway(), profile={"provider": "mock"})
        self.lifecycle = DraftLifecycle(self.store, self.briefs, self.contracts, self.generator, generation_timeout_s=generation_timeout_s, default_language="en")
        self.review = ReviewSessionEngine(self.store, self.lifecycle, self.generator, proposal_timeout_s=proposal_timeout_s)


@pytest.fixture
def studio(tmp_path: Path) -> Studio:
    return Studio(tmp_path / "data")
