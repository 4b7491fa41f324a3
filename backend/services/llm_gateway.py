from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Callable

import httpx

logger = logging.getLogger(__name__)

OPENAI_COMPAT_PROVIDERS = {"openai_compat", "llama_cpp"}


class _StreamDone(Exception):
    pass


def _ollama_chunk(line: str) -> str | None:
    if not line.strip():
        return None
    return json.loads(line).get("message", {}).get("content", "") or None


def _sse_chunk(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == "[DONE]":
        raise _StreamDone
    obj = json.loads(data)
    return obj.get("choices", [{}])[0].get("delta", {}).get("content", "") or None


class LLMGateway:
    """Streams chat completions from an Ollama or OpenAI-compatible endpoint."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = float(os.getenv("LLM_TIMEOUT_S", "60"))
        self.transport = transport

    def env_defaults(self) -> dict[str, Any]:
        return {
            "provider": os.getenv("DEFAULT_LLM_PROVIDER", "mock"),
            "model": os.getenv("DEFAULT_LLM_MODEL", "mock-story-v1"),
            "base_url": os.getenv("OPENAI_COMPAT_BASE_URL", ""),
            "api_key": os.getenv("OPENAI_COMPAT_API_KEY", ""),
            "timeout_s": self.timeout,
        }

    def _endpoint(self, profile: dict[str, Any]) -> tuple[str, dict[str, str], Callable[[str], str | None]]:
        provider = profile.get("provider", "mock")
        headers = {"Content-Type": "application/json"}
        if provider == "ollama":
            base = profile.get("base_url") or os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
            return f"{base.rstrip('/')}/api/chat", headers, _ollama_chunk
        if provider in OPENAI_COMPAT_PROVIDERS:
            fallback = os.getenv("LLAMA_CPP_BASE_URL", "http://127.0.0.1:8080") if provider == "llama_cpp" else os.getenv("OPENAI_COMPAT_BASE_URL", "http://127.0.0.1:8001")
            base = profile.get("base_url") or fallback
            api_key = profile.get("api_key") or os.getenv("OPENAI_COMPAT_API_KEY", "")
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            return f"{base.rstrip('/')}/v1/chat/completions", headers, _sse_chunk
        raise RuntimeError(f"unsupported provider: {provider}")

    async def chat_stream(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
        profile: dict[str, Any],
    ) -> AsyncIterator[str]:
        url, headers, parse = self._endpoint(profile)
        payload: dict[str, Any] = {"model": profile.get("model", ""), "messages": messages, "stream": True}
        if profile.get("provider") == "ollama":
            payload["options"] = {"temperature": temperature, "num_predict": max_tokens}
        else:
            payload.update({"temperature": temperature, "max_tokens": max_tokens})
        timeout = float(profile.get("timeout_s", self.timeout))
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    try:
                        chunk = parse(line)
                    except _StreamDone:
                        break
                    if chunk:
                        yield chunk

    async def chat_complete(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
        profile: dict[str, Any],
    ) -> dict[str, Any]:
        parts = [d async for d in self.chat_stream(messages, temperature, max_tokens, profile)]
        text = "".join(parts)
        usage = {"prompt_tokens": max(1, len(str(messages)) // 4), "completion_tokens": max(1, len(text) // 4)}
        logger.debug("llm %s/%s completed (%s chars)", profile.get("provider"), profile.get("model"), len(text))
        return {"text": text, "usage": usage}
