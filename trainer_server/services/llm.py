import asyncio
import json
import logging
import os
from time import perf_counter
from typing import AsyncIterator, Dict, List, Optional, Protocol

import httpx
from dotenv import load_dotenv
from groq import AsyncGroq

from .errors import GenerationError
from .persona import PersonaContext, build_system_prompt

# --- Configuration ---
load_dotenv()
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "groq").lower()
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_RETRY_DELAY = float(os.getenv("LLM_RETRY_DELAY", "0.1"))  # seconds
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "150"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.8"))

# Groq/model config
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
GROQ_FALLBACK_MODELS = [
    m.strip()
    for m in os.getenv("GROQ_FALLBACK_MODELS", "openai/gpt-oss-20b").split(",")
    if m.strip()
]

# Gemini Developer API (AI Studio) REST
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
GEMINI_TIMEOUT_S = float(os.getenv("GEMINI_TIMEOUT_S", "30"))

# History policy
HISTORY_KEEP_LAST_MESSAGES = int(os.getenv("HISTORY_KEEP_LAST_MESSAGES", "24"))

logger = logging.getLogger("trainer")


class GenerationSource(Protocol):
    def generate(
        self,
        prompt: str,
        history: List[Dict[str, str]],
        persona: PersonaContext,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[str]:
        """Stream reply fragments; stop early once ``cancel_event`` is set."""
        ...


def _build_messages(
    user_text: str,
    history: Optional[List[Dict[str, str]]],
    persona: PersonaContext,
) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [{"role": "system", "content": build_system_prompt(persona)}]
    if history:
        messages.extend(history[-HISTORY_KEEP_LAST_MESSAGES:])
    messages.append({"role": "user", "content": user_text})
    return messages


def _iter_groq_models(primary: str, fallbacks: List[str]) -> List[str]:
    # Try primary then fallbacks; de-dup preserving order.
    seen = set()
    out = []
    for m in [primary] + list(fallbacks):
        if not m or m in seen:
            continue
        seen.add(m)
        out.append(m)
    return out


class GroqGenerationSource:
    """Streaming chat completions on Groq, with model fallback and short retries."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        fallback_models: Optional[List[str]] = None,
        client: Optional[AsyncGroq] = None,
    ):
        self.api_key = api_key or GROQ_API_KEY
        self.models = _iter_groq_models(
            model or GROQ_MODEL,
            GROQ_FALLBACK_MODELS if fallback_models is None else fallback_models,
        )
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            if not self.api_key:
                raise GenerationError("Groq API key is not configured. Please set GROQ_API_KEY in the .env file.")
            self._client = AsyncGroq(api_key=self.api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        history: List[Dict[str, str]],
        persona: PersonaContext,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[str]:
        client = self._get_client()
        messages = _build_messages(prompt, history, persona)
        llm_start = perf_counter()
        last_error = None

        for model in self.models:
            for attempt in range(1, LLM_MAX_RETRIES + 1):
                if cancel_event.is_set():
                    return
                emitted = False
                try:
                    stream = await client.chat.completions.create(
                        messages=messages,
                        model=model,
                        max_tokens=LLM_MAX_TOKENS,
                        temperature=LLM_TEMPERATURE,
                        stream=True,
                    )
                    try:
                        async for chunk in stream:
                            if cancel_event.is_set():
                                logger.info(f"Groq stream model={model} canceled")
                                return
                            choices = getattr(chunk, "choices", None)
                            if not choices:
                                continue
                            delta = getattr(choices[0], "delta", None)
                            content = getattr(delta, "content", None) if delta else None
                            if content:
                                emitted = True
                                yield content
                    finally:
                        close = getattr(stream, "close", None)
                        if close is not None:
                            await close()

                    elapsed = (perf_counter() - llm_start) * 1000
                    if emitted:
                        logger.info(f"LLM stream model={model} completed in {elapsed:.1f} ms.")
                        return
                    last_error = "Empty LLM response"
                except GenerationError:
                    raise
                except Exception as e:
                    if emitted:
                        # Retrying now would repeat fragments the coordinator already has.
                        raise GenerationError(f"Groq stream interrupted: {e}") from e
                    last_error = str(e)
                    elapsed = (perf_counter() - llm_start) * 1000
                    logger.warning(f"Error streaming Groq model={model} attempt {attempt} after {elapsed:.1f} ms: {e}")

                if attempt < LLM_MAX_RETRIES:
                    await asyncio.sleep(LLM_RETRY_DELAY * (1.5 ** (attempt - 1)))

        raise GenerationError(f"Groq generation failed: {last_error}")


def _to_gemini_contents(history: List[Dict[str, str]], prompt: str) -> List[Dict[str, object]]:
    contents: List[Dict[str, object]] = []
    for m in history[-HISTORY_KEEP_LAST_MESSAGES:]:
        role = "model" if m.get("role") in ("assistant", "model") else "user"
        contents.append({"role": role, "parts": [{"text": m.get("content", "")}]})
    contents.append({"role": "user", "parts": [{"text": prompt}]})
    return contents


def _parse_gemini_sse_line(line: str) -> str:
    """Text carried by one SSE ``data:`` line; empty for anything else."""
    if not line.startswith("data:"):
        return ""
    try:
        chunk = json.loads(line[5:].strip())
        parts = chunk["candidates"][0]["content"]["parts"]
    except (json.JSONDecodeError, KeyError, IndexError, TypeError):
        return ""
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiGenerationSource:
    """Gemini ``streamGenerateContent`` over server-sent events."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or GEMINI_API_KEY
        self.model = model or GEMINI_MODEL
        self.base_url = (base_url or GEMINI_BASE_URL).rstrip("/")
        self._client = client

    async def generate(
        self,
        prompt: str,
        history: List[Dict[str, str]],
        persona: PersonaContext,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[str]:
        if not self.api_key:
            raise GenerationError("GEMINI_API_KEY is not set. Add it to .env to use the Gemini provider.")

        url = f"{self.base_url}/v1beta/models/{self.model}:streamGenerateContent"
        body = {
            "systemInstruction": {"parts": [{"text": build_system_prompt(persona)}]},
            "contents": _to_gemini_contents(history, prompt),
            "generationConfig": {"temperature": LLM_TEMPERATURE, "maxOutputTokens": LLM_MAX_TOKENS},
        }
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

        client = self._client or httpx.AsyncClient(timeout=GEMINI_TIMEOUT_S)
        llm_start = perf_counter()
        try:
            async with client.stream("POST", url, params={"alt": "sse"}, json=body, headers=headers) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")[:300]
                    raise GenerationError(f"Gemini API error: {response.status_code} {detail}")
                async for line in response.aiter_lines():
                    if cancel_event.is_set():
                        logger.info("Gemini stream canceled")
                        return
                    text = _parse_gemini_sse_line(line)
                    if text:
                        yield text
        except httpx.HTTPError as e:
            raise GenerationError(f"Gemini request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
        logger.info(f"LLM stream model={self.model} completed in {(perf_counter() - llm_start) * 1000:.1f} ms.")


def create_generation_source(provider: Optional[str] = None) -> GenerationSource:
    provider = (provider or LLM_PROVIDER).lower()
    if provider == "groq":
        return GroqGenerationSource()
    if provider == "gemini":
        return GeminiGenerationSource()
    raise ValueError(f"Unsupported LLM provider: '{provider}'. Supported providers are: 'groq', 'gemini'")


if __name__ == '__main__':
    # This is for testing the module directly
    from .persona import persona_for_scenario

    async def _demo():
        source = create_generation_source()
        persona = persona_for_scenario("retail-refund")
        prompt = "I need my refund processed today, this is ridiculous"
        print(f"--- Testing {LLM_PROVIDER} generation ---")
        print(f"Prompt: {prompt}")
        async for fragment in source.generate(prompt, [], persona, asyncio.Event()):
            print(fragment, end="", flush=True)
        print()

    asyncio.run(_demo())
