from __future__ import annotations

import json
import logging
from typing import Any

from services.errors import GenerationFailed
from services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)

MOCK_TITLES = {
    "ar": "قصة جميلة",
    "he": "סיפור יפה",
    "en": "A Brave Little Step",
}


def _repair_json(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start:end + 1]
    return text


def parse_json_answer(text: str) -> dict[str, Any]:
    try:
        obj = json.loads(text)
    except ValueError:
        try:
            obj = json.loads(_repair_json(text))
        except ValueError as e:
            raise GenerationFailed(f"model answer is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise GenerationFailed("model answer is not a JSON object")
    return obj


def normalize_pages(raw: Any) -> list[dict[str, Any]]:
    """Coerce model output pages into the stored page shape, numbering from 1."""
    if not isinstance(raw, list) or not raw:
        raise GenerationFailed("model answer has no pages")
    pages = []
    for i, p in enumerate(raw, start=1):
        if not isinstance(p, dict):
            raise GenerationFailed(f"page {i} is not an object")
        text = str(p.get("text", "")).strip()
        if not text:
            raise GenerationFailed(f"page {i} has no text")
        pages.append({
            "page_number": i,
            "text": text,
            "image_prompt": str(p.get("image_prompt", p.get("imagePrompt", ""))).strip(),
            "emotional_tone": str(p.get("emotional_tone", p.get("emotionalTone", ""))).strip(),
        })
    return pages


def pages_text(pages: list[dict[str, Any]]) -> str:
    return "\n\n".join(p.get("text", "") for p in pages)


class StoryGenerator:
    """Draft writer and revision proposer.

    With the `mock` provider both operations are answered locally and
    deterministically from their inputs; any other provider goes through the
    LLM gateway and must answer with JSON.
    """

    def __init__(self, llm_gateway: LLMGateway, profile: dict[str, Any] | None = None) -> None:
        self.llm_gateway = llm_gateway
        self.profile = profile or llm_gateway.env_defaults()

    @property
    def is_mock(self) -> bool:
        return self.profile.get("provider", "mock") == "mock"

    async def generate(self, contract: dict[str, Any], generation_config: dict[str, Any]) -> dict[str, Any]:
        if self.is_mock:
            return self._mock_story(contract, generation_config)
        messages = [
            {"role": "system", "content": "You write therapeutic picture-book stories for children. Obey every constraint in the contract. Answer with JSON only."},
            {"role": "user", "content": self._story_prompt(contract, generation_config)},
        ]
        out = await self.llm_gateway.chat_complete(messages, 0.7, 2000, self.profile)
        obj = parse_json_answer(out.get("text", ""))
        title = str(obj.get("title", "")).strip()
        if not title:
            raise GenerationFailed("model answer has no title")
        return {"title": title, "pages": normalize_pages(obj.get("pages"))}

    async def propose_revision(self, pages: list[dict[str, Any]], history: list[dict[str, Any]]) -> dict[str, Any]:
        feedback = next((m["content"] for m in reversed(history) if m.get("role") == "specialist"), "")
        if self.is_mock:
            return self._mock_proposal(pages, feedback)
        messages = [
            {"role": "system", "content": "You are a therapeutic children's story editor. Keep the same number of pages and the emotional arc. Answer with JSON only."},
            {"role": "user", "content": (
                f"Current pages:\n{json.dumps(pages, ensure_ascii=False, indent=2)}\n\n"
                f"Conversation so far:\n{json.dumps(history, ensure_ascii=False)}\n\n"
                'Return {"pages": [{"page_number", "text", "image_prompt", "emotional_tone"}], "rationale": "..."}'
            )},
        ]
        out = await self.llm_gateway.chat_complete(messages, 0.5, 2000, self.profile)
        obj = parse_json_answer(out.get("text", ""))
        suggested = normalize_pages(obj.get("pages"))
        if len(suggested) != len(pages):
            raise GenerationFailed(f"proposal has {len(suggested)} pages, draft has {len(pages)}")
        return {
            "suggested_pages": suggested,
            "suggested_text": pages_text(suggested),
            "rationale": str(obj.get("rationale") or obj.get("summary") or "").strip() or "Revision based on specialist feedback.",
        }

    def _story_prompt(self, contract: dict[str, Any], config: dict[str, Any]) -> str:
        budget = contract.get("length_budget", {})
        return "\n".join([
            f"language={config.get('language')} tone={config.get('tone')} length={config.get('length')}",
            f"scenes between {budget.get('min_scenes')} and {budget.get('max_scenes')}, at most {budget.get('max_words')} words",
            f"style_rules={json.dumps(contract.get('style_rules', {}))}",
            f"required_elements={contract.get('required_elements', [])}",
            f"coping_tools={contract.get('coping_tool_repetitions', {})} (tool: times it must be practised)",
            f"must_avoid={contract.get('must_avoid', [])}",
            f"ending={json.dumps(contract.get('ending_contract', {}))}",
            f"key_message={contract.get('key_message') or ''}",
            "Use {{child_name}} for the child's name.",
            'Return {"title": "...", "pages": [{"page_number": 1, "text": "...", "image_prompt": "...", "emotional_tone": "..."}]}',
        ])

    def _mock_story(self, contract: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
        count = max(1, int(contract.get("length_budget", {}).get("min_scenes") or 3))
        tools = contract.get("allowed_coping_tools") or []
        elements = contract.get("required_elements") or []
        pages = []
        for n in range(1, count + 1):
            element = elements[(n - 1) % len(elements)] if elements else "gentle_moment"
            line = f"{{{{child_name}}}} notices a feeling and takes a small step ({element.replace('_', ' ')})."
            if tools and n == count:
                line = f"{{{{child_name}}}} practises {tools[0].replace('_', ' ')} and feels safe again."
            pages.append({
                "page_number": n,
                "text": line,
                "image_prompt": f"Soft watercolour scene {n}: a child in a calm, familiar place",
                "emotional_tone": "calm" if n in (1, count) else "gentle",
            })
        return {"title": MOCK_TITLES.get(config.get("language", "en"), MOCK_TITLES["en"]), "pages": pages}

    def _mock_proposal(self, pages: list[dict[str, Any]], feedback: str) -> dict[str, Any]:
        suggested = [dict(p) for p in pages]
        if suggested:
            last = suggested[-1]
            last["text"] = f"{last['text']} Everyone around {{{{child_name}}}} smiles warmly."
        return {
            "suggested_pages": suggested,
            "suggested_text": pages_text(suggested),
            "rationale": f"Softened the ending in response to: {feedback[:160]}",
        }
