"""Ollama client for embeddings and tool-calling verification agents.

Supports:
  - Batched embeddings via /api/embed
  - Tool/function calling with a bounded multi-round execution loop
    (one model round = one step)
"""

import json
import time
import random
import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from clausecheck.config import (
    OLLAMA_BASE_URL, OLLAMA_MODEL, EMBED_MODEL, EMBED_BATCH_SIZE,
    LLM_TIMEOUT, LLM_MAX_RETRIES, LLM_CONTEXT_WINDOW, LLM_TEMPERATURE,
)

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Provider-side failure of an embedding or agent call.

    ``code`` carries the provider error code (RATE_LIMITED, HTTP_503,
    TIMEOUT, TRANSPORT_ERROR, MALFORMED_RESPONSE).
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


def _status_code_to_error_code(status: int) -> str:
    if status == 429:
        return "RATE_LIMITED"
    return f"HTTP_{status}"


def _is_retryable(status: int) -> bool:
    return status == 429 or status >= 500


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    body: dict,
    label: str,
    max_retries: int,
) -> dict:
    """POST with exponential backoff + jitter on 429 / 5xx / transport errors."""
    last_error: AgentError | None = None
    for attempt in range(max_retries):
        if attempt > 0:
            backoff = min(2 ** attempt + random.uniform(0, 1), 30)
            logger.info(f"[{label}] Retry {attempt}/{max_retries - 1} in {backoff:.1f}s ({last_error})")
            await asyncio.sleep(backoff)
        try:
            response = await client.post(url, json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            last_error = AgentError(
                f"{label}: provider returned HTTP {status}",
                _status_code_to_error_code(status),
            )
            if not _is_retryable(status):
                raise last_error from e
        except httpx.TimeoutException as e:
            last_error = AgentError(f"{label}: request timed out", "TIMEOUT")
        except httpx.TransportError as e:
            last_error = AgentError(f"{label}: transport error: {e}", "TRANSPORT_ERROR")
        except ValueError as e:
            raise AgentError(f"{label}: response was not JSON", "MALFORMED_RESPONSE") from e

    raise last_error or AgentError(f"{label}: no attempts made", "TRANSPORT_ERROR")


# ═══════════════════════════════════════════════════
# EMBEDDINGS
# ═══════════════════════════════════════════════════

class OllamaEmbedder:
    """Embedding provider backed by Ollama /api/embed."""

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        model: str = EMBED_MODEL,
        batch_size: int = EMBED_BATCH_SIZE,
        timeout: float = LLM_TIMEOUT,
        max_retries: int = LLM_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.batch_size = batch_size
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in provider-sized batches. Raises AgentError on failure."""
        all_embeddings: list[list[float]] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for i in range(0, len(texts), self.batch_size):
                batch = texts[i:i + self.batch_size]
                data = await _post_with_retry(
                    client,
                    f"{self.base_url}/api/embed",
                    {"model": self.model, "input": batch},
                    label=f"embed batch {i // self.batch_size}",
                    max_retries=self.max_retries,
                )
                embeddings = data.get("embeddings", [])
                if len(embeddings) != len(batch):
                    raise AgentError(
                        f"Embedding count mismatch: sent {len(batch)}, got {len(embeddings)}",
                        "MALFORMED_RESPONSE",
                    )
                all_embeddings.extend(embeddings)
        return all_embeddings


# ═══════════════════════════════════════════════════
# TOOL-CALLING AGENT
# ═══════════════════════════════════════════════════

@dataclass
class AgentStep:
    index: int
    text: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    tool_results: list[str] = field(default_factory=list)


@dataclass
class AgentTranscript:
    text: str
    steps: list[AgentStep] = field(default_factory=list)
    budget_exhausted: bool = False

    @property
    def tool_call_count(self) -> int:
        return sum(len(s.tool_calls) for s in self.steps)


def _parse_tool_arguments(raw) -> dict:
    """Ollama usually sends a dict; some models send a JSON string."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"_raw": raw}
    return {}


class OllamaAgent:
    """Opaque tool-using agent: instructions + prompt + tool table + step budget.

    ``tools`` is any object exposing ``definitions`` (Ollama function
    definitions) and ``async execute(name, arguments) -> str``.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        model: str = OLLAMA_MODEL,
        timeout: float = LLM_TIMEOUT,
        max_retries: int = LLM_MAX_RETRIES,
        temperature: float = LLM_TEMPERATURE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.temperature = temperature
        self._transport = transport

    async def generate(
        self,
        instructions: str,
        prompt: str,
        tools,
        max_steps: int,
        label: str = "agent",
    ) -> AgentTranscript:
        messages: list[dict] = [
            {"role": "system", "content": instructions},
            {"role": "user", "content": prompt},
        ]
        steps: list[AgentStep] = []
        content = ""
        t0 = time.time()

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for step_no in range(1, max_steps + 1):
                body = {
                    "model": self.model,
                    "messages": messages,
                    "tools": tools.definitions,
                    "stream": False,
                    "think": False,
                    "options": {
                        "temperature": self.temperature,
                        "num_ctx": LLM_CONTEXT_WINDOW,
                    },
                }
                result = await _post_with_retry(
                    client, f"{self.base_url}/api/chat", body,
                    label=f"{label} step {step_no}", max_retries=self.max_retries,
                )
                message = result.get("message")
                if not isinstance(message, dict):
                    raise AgentError(f"{label}: response has no message", "MALFORMED_RESPONSE")

                content = message.get("content", "") or ""
                tool_calls = message.get("tool_calls") or []
                step = AgentStep(index=step_no, text=content)
                steps.append(step)

                if not tool_calls:
                    logger.info(
                        f"[{label}] Finished in {step_no} step(s), "
                        f"{sum(len(s.tool_calls) for s in steps)} tool call(s), {time.time() - t0:.1f}s"
                    )
                    return AgentTranscript(text=content, steps=steps)

                messages.append(message)
                for tc in tool_calls:
                    fn = tc.get("function", {})
                    fn_name = fn.get("name", "unknown")
                    fn_args = _parse_tool_arguments(fn.get("arguments"))
                    tool_result = await tools.execute(fn_name, fn_args)
                    step.tool_calls.append({"name": fn_name, "arguments": fn_args})
                    step.tool_results.append(tool_result)
                    messages.append({"role": "tool", "content": tool_result, "tool_name": fn_name})

        logger.warning(f"[{label}] Step budget of {max_steps} exhausted")
        return AgentTranscript(text=content, steps=steps, budget_exhausted=True)


# ═══════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════

# Cache for check_ollama_status
_ollama_status_cache: dict | None = None
_ollama_status_ts: float = 0.0


async def check_ollama_status() -> dict:
    """Check if Ollama is running and the configured models are available.

    Results are cached for 120 seconds.
    """
    global _ollama_status_cache, _ollama_status_ts
    now = time.time()
    if _ollama_status_cache is not None and (now - _ollama_status_ts) < 120:
        return _ollama_status_cache

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(f"{OLLAMA_BASE_URL}/api/tags")
            resp.raise_for_status()
            model_names = [m["name"] for m in resp.json().get("models", [])]
            result = {
                "status": "online",
                "models": model_names,
                "configured_model": OLLAMA_MODEL,
                "model_available": any(OLLAMA_MODEL in name for name in model_names),
                "embed_model_available": any(EMBED_MODEL in name for name in model_names),
            }
            _ollama_status_cache = result
            _ollama_status_ts = now
            return result
    except httpx.HTTPError as e:
        return {"status": "offline", "error": str(e)}
