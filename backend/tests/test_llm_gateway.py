import asyncio
import json

import httpx
import pytest

from services.errors import GenerationFailed
from services.llm_gateway import LLMGateway
from services.story_generator import StoryGenerator, normalize_pages, parse_json_answer

CONTRACT = {
    "length_budget": {"min_scenes": 2, "max_scenes": 4, "max_words": 200},
    "allowed_coping_tools": ["coping_phrase"],
    "coping_tool_repetitions": {"coping_phrase": 2},
}


def sse_body(chunks: list[str]) -> str:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n\n" for c in chunks]
    return "".join(lines) + "data: [DONE]\n\n"


def openai_transport(chunks: list[str], seen: list | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, text=sse_body(chunks), headers={"content-type": "text/event-stream"})

    return httpx.MockTransport(handler)


def test_openai_compatible_stream_is_joined():
    seen = []
    gateway = LLMGateway(transport=openai_transport(["Hel", "lo"], seen))
    profile = {"provider": "openai_compat", "model": "m", "base_url": "http://llm.test", "api_key": "k"}
    out = asyncio.run(gateway.chat_complete([{"role": "user", "content": "hi"}], 0.2, 50, profile))
    assert out["text"] == "Hello"
    assert seen[0].url == httpx.URL("http://llm.test/v1/chat/completions")
    assert seen[0].headers["Authorization"] == "Bearer k"
    assert json.loads(seen[0].content)["max_tokens"] == 50


def test_ollama_stream_is_joined():
    def handler(request: httpx.Request) -> httpx.Response:
        body = "\n".join(json.dumps({"message": {"content": c}}) for c in ["a", "b", "c"])
        return httpx.Response(200, text=body)

    gateway = LLMGateway(transport=httpx.MockTransport(handler))
    out = asyncio.run(gateway.chat_complete([], 0.2, 10, {"provider": "ollama", "model": "m", "base_url": "http://ollama.test"}))
    assert out["text"] == "abc"


def test_mock_provider_is_not_a_remote_endpoint():
    with pytest.raises(RuntimeError):
        asyncio.run(LLMGateway().chat_complete([], 0.2, 10, {"provider": "mock"}))


def test_remote_story_answer_is_normalized():
    answer = json.dumps({
        "title": "Brave Night",
        "pages": [
            {"text": "{{child_name}} sees the dark.", "imagePrompt": "a dark room", "emotionalTone": "uneasy"},
            {"text": "{{child_name}} says the coping phrase twice.", "image_prompt": "a lamp"},
        ],
    })
    gateway = LLMGateway(transport=openai_transport(["Sure! ", answer]))
    generator = StoryGenerator(gateway, profile={"provider": "openai_compat", "model": "m", "base_url": "http://llm.test"})
    story = asyncio.run(generator.generate(CONTRACT, {"language": "en", "tone": "calm", "length": "short"}))
    assert story["title"] == "Brave Night"
    assert story["pages"][0] == {"page_number": 1, "text": "{{child_name}} sees the dark.", "image_prompt": "a dark room", "emotional_tone": "uneasy"}
    assert story["pages"][1]["page_number"] == 2


def test_remote_proposal_must_keep_page_count():
    answer = json.dumps({"pages": [{"text": "only one"}], "rationale": "shorter"})
    gateway = LLMGateway(transport=openai_transport([answer]))
    generator = StoryGenerator(gateway, profile={"provider": "openai_compat", "model": "m", "base_url": "http://llm.test"})
    pages = [{"page_number": 1, "text": "a"}, {"page_number": 2, "text": "b"}]
    with pytest.raises(GenerationFailed):
        asyncio.run(generator.propose_revision(pages, [{"role": "specialist", "content": "shorter"}]))


def test_answer_parsing_errors():
    assert parse_json_answer('noise {"a": 1} noise') == {"a": 1}
    with pytest.raises(GenerationFailed):
        parse_json_answer("no json here")
    with pytest.raises(GenerationFailed):
        normalize_pages([{"text": ""}])
