"""Ollama LLM client used by the Discrepancy Judge.

Supports:
  - Structured outputs via JSON Schema (format: { schema })
  - Optional chain-of-thought (think: true → message.thinking)
  - Retry with exponential backoff + jitter on transport and parse failures

Unlike a best-effort summarizer, verification must never treat a failed
call as an answer: exhausted retries raise ``TransientCollaboratorError``
(transport) or ``MalformedResponseError`` (unparseable output) and the
caller decides how to fail closed.
"""

import json
import re
import time
import random
import asyncio
import logging
from typing import Callable, Awaitable

import httpx

from kyc_verifier.config import (
    OLLAMA_BASE_URL, OLLAMA_MODEL, LLM_TIMEOUT, LLM_MAX_RETRIES, LLM_BACKOFF_CAP,
    LLM_CONTEXT_WINDOW, LLM_MAX_INPUT_CHARS, LLM_USE_STRUCTURED_OUTPUTS,
)
from kyc_verifier.pipeline.errors import MalformedResponseError, TransientCollaboratorError

logger = logging.getLogger(__name__)

# Type for progress callback: async fn(stage, message, details_dict)
LLMProgressCallback = Callable[[str, str, dict], Awaitable[None]]

# Judge verdicts are small JSON objects; no need for the whole window
DEFAULT_PREDICT_BUDGET = 8192


async def _noop_cb(stage: str, message: str, details: dict) -> None:
    pass


def _chat_message(result) -> dict:
    """The ``message`` object of an /api/chat reply.

    Raises TypeError when the reply is not shaped like a chat message, so
    it is retried and finally reported like any other unparseable output.
    """
    message = result.get("message") if isinstance(result, dict) else None
    if not isinstance(message, dict):
        raise TypeError(f"chat reply has no message object: {str(result)[:200]!r}")
    content = message.get("content")
    if content is not None and not isinstance(content, str):
        raise TypeError(f"chat message content is {type(content).__name__}, expected str")
    return message


def _backoff_delay(attempt: int) -> float:
    return min(2 ** attempt + random.uniform(0, 1), LLM_BACKOFF_CAP)


def _truncate_messages(messages: list[dict], prompt: str, label: str) -> None:
    total_input_chars = sum(len(m["content"]) for m in messages)
    if total_input_chars <= LLM_MAX_INPUT_CHARS:
        return
    excess = total_input_chars - LLM_MAX_INPUT_CHARS
    original_len = len(prompt)
    truncated = prompt[: max(original_len - excess - 300, 0)]
    truncated += (
        f"\n\n[... INPUT TRUNCATED for context safety: "
        f"original {original_len:,} chars, kept {len(truncated):,} chars ...]"
    )
    messages[-1]["content"] = truncated
    logger.warning(f"[{label}] Input truncated: {original_len:,} → {len(truncated):,} chars")


async def call_llm(
    prompt: str,
    system_prompt: str = "",
    temperature: float = 0.0,
    expect_json: bool | dict = True,
    task_label: str = "",
    on_progress: LLMProgressCallback | None = None,
    think: bool = False,
    max_tokens: int | None = None,
) -> dict | str:
    """Call the local Ollama model and return its response.

    Args:
        prompt: User prompt text
        system_prompt: System prompt for role/context
        temperature: LLM temperature (0 = deterministic)
        expect_json: True for basic JSON mode, or a JSON Schema dict for structured outputs.
                     False for free-text response.
        task_label: Human-readable label for this LLM call
        on_progress: Async callback for progress updates
        think: If True, enable chain-of-thought
        max_tokens: Explicit num_predict budget

    Returns:
        Parsed JSON dict or raw string

    Raises:
        TransientCollaboratorError: the model was unreachable for every attempt
        MalformedResponseError: every attempt returned unparseable output
    """
    cb = on_progress or _noop_cb
    label = task_label or "LLM Call"

    messages = []
    if system_prompt:
        sp = system_prompt
        if not think:
            sp += "\n\nIMPORTANT: Do NOT include any chain-of-thought, reasoning, or analysis. Output ONLY the requested content directly."
        messages.append({"role": "system", "content": sp})
    messages.append({"role": "user", "content": prompt})
    _truncate_messages(messages, prompt, label)

    if expect_json:
        if isinstance(expect_json, dict) and LLM_USE_STRUCTURED_OUTPUTS:
            format_param = expect_json
            schema_enforced = True
        else:
            format_param = "json"
            schema_enforced = False
    else:
        format_param = ""
        schema_enforced = False

    original_messages = [m.copy() for m in messages]
    prompt_chars = sum(len(m["content"]) for m in messages)

    await cb("llm_start", label, {
        "type": "llm_start",
        "task": label,
        "model": OLLAMA_MODEL,
        "prompt_chars": prompt_chars,
        "schema_enforced": schema_enforced,
    })

    last_error: Exception | None = None
    last_content = ""
    for attempt in range(LLM_MAX_RETRIES):
        t0 = time.time()
        content = ""
        if attempt > 0:
            await cb("llm_retry", f"{label}: retry {attempt}/{LLM_MAX_RETRIES}", {
                "type": "llm_retry",
                "task": label,
                "attempt": attempt + 1,
                "reason": str(last_error),
            })
            await asyncio.sleep(_backoff_delay(attempt))

        try:
            body = {
                "model": OLLAMA_MODEL,
                "messages": messages,
                "stream": False,
                "options": {
                    "temperature": temperature,
                    "num_predict": max_tokens or DEFAULT_PREDICT_BUDGET,
                    "num_ctx": LLM_CONTEXT_WINDOW,
                },
                "format": format_param,
                "think": think,
            }

            # Per-call client: concurrent judge calls never share a connection pool
            async with httpx.AsyncClient(timeout=LLM_TIMEOUT) as client:
                response = await client.post(f"{OLLAMA_BASE_URL}/api/chat", json=body)
                response.raise_for_status()
                result = response.json()

            message = _chat_message(result)
            content = message.get("content") or ""
            last_content = content
            elapsed = time.time() - t0

            if not expect_json:
                await cb("llm_done", f"✓ {label}: complete ({len(content)} chars)", {
                    "type": "llm_done",
                    "task": label,
                    "total_seconds": round(elapsed, 2),
                })
                return content

            parsed = _parse_json_response(content)
            thinking_text = message.get("thinking", "")
            if thinking_text and isinstance(parsed, dict):
                parsed["_thinking"] = thinking_text
            await cb("llm_done", f"✓ {label}: complete", {
                "type": "llm_done",
                "task": label,
                "total_seconds": round(elapsed, 2),
            })
            return parsed

        except (json.JSONDecodeError, KeyError, TypeError) as e:
            last_error = e
            elapsed = time.time() - t0
            await cb("llm_parse_error", f"{label}: JSON parse failed ({elapsed:.1f}s)", {
                "type": "llm_parse_error",
                "task": label,
                "error": str(e),
                "attempt": attempt + 1,
            })
            logger.warning(f"[{label}] Failed content (first 2000 chars): {repr(content[:2000]) if content else '(empty)'}")

            # Structured output failed once, retry in basic JSON mode
            if schema_enforced:
                logger.warning(f"[{label}] Schema-enforced output failed, falling back to basic JSON mode")
                format_param = "json"
                schema_enforced = False

            messages = [m.copy() for m in original_messages]
            messages.append({
                "role": "user",
                "content": (
                    "Your previous response was not valid JSON. "
                    "Please return ONLY a valid JSON object with the requested fields, no extra text or explanation."
                ),
            })
        except httpx.HTTPError as e:
            last_error = e
            elapsed = time.time() - t0
            logger.warning(f"[{label}] HTTP error on attempt {attempt + 1}/{LLM_MAX_RETRIES}: {e}")
            await cb("llm_error", f"{label}: HTTP error: {e} ({elapsed:.1f}s)", {
                "type": "llm_error",
                "task": label,
                "error": str(e),
                "attempt": attempt + 1,
            })

    await cb("llm_failed", f"{label}: failed after {LLM_MAX_RETRIES} attempts", {
        "type": "llm_failed",
        "task": label,
        "error": str(last_error),
    })
    logger.error(f"[{label}] Failed after {LLM_MAX_RETRIES} attempts: {last_error}")

    if isinstance(last_error, httpx.HTTPError):
        raise TransientCollaboratorError(
            "llm", f"{label} failed after {LLM_MAX_RETRIES} attempts: {last_error}",
            attempts=LLM_MAX_RETRIES,
        )
    raise MalformedResponseError(
        "llm", f"{label} returned no valid JSON after {LLM_MAX_RETRIES} attempts: {last_error}",
        raw=last_content[:2000],
    )


def _parse_json_response(text: str) -> dict:
    """Extract and parse JSON from LLM response text.

    Attempts multiple extraction strategies in order:
      1. Direct parse
      2. Markdown code block extraction
      3. Greedy brace scanning
    """
    if not text or not text.strip():
        raise json.JSONDecodeError("Empty response", "", 0)

    text = text.strip()
    text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL).strip()
    if not text:
        raise json.JSONDecodeError("Empty response after stripping think blocks", "", 0)

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    code_block_pattern = re.compile(r'```(?:json)?\s*\n?(.*?)```', re.DOTALL)
    for match in code_block_pattern.finditer(text):
        block = match.group(1).strip()
        if block and '{' in block:
            try:
                parsed = json.loads(block)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

    # Scan every opening brace against the farthest closing brace
    start_positions = [i for i, c in enumerate(text) if c == "{"]
    for start in start_positions:
        end = len(text) - 1
        while end > start:
            if text[end] == "}":
                try:
                    parsed = json.loads(text[start:end + 1])
                except json.JSONDecodeError:
                    parsed = None
                if isinstance(parsed, dict):
                    return parsed
            end -= 1

    raise json.JSONDecodeError("No valid JSON object found in response", text[:200], 0)


async def check_ollama_status() -> dict:
    """Check if Ollama is running and the judge model is available."""
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(f"{OLLAMA_BASE_URL}/api/tags")
            resp.raise_for_status()
            models = resp.json().get("models", [])
            model_names = [m["name"] for m in models]
            return {
                "status": "online",
                "models": model_names,
                "configured_model": OLLAMA_MODEL,
                "model_available": any(OLLAMA_MODEL in name for name in model_names),
            }
    except (httpx.HTTPError, KeyError, ValueError) as e:
        return {"status": "offline", "error": str(e)}
