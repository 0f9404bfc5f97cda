"""
Research assistant — OpenAI chat completions behind analyst capability modes.

Step handlers call `ask_analyst` for prose and `ask_analyst_json` for
structured extraction. Both share one persona; the capability picks the
instruction appended to it.
"""

from __future__ import annotations

import json
import logging
import time

from openai import APIConnectionError, OpenAI, RateLimitError

import config

log = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = OpenAI(api_key=config.OPENAI_API_KEY)
    return _client


MAX_ATTEMPTS = 4
BASE_DELAY = 5  # seconds

ANALYST_PERSONA = (
    "You are a disciplined value-investing research analyst. "
    "Be concise, cite the numbers you are given, and say so when data is missing."
)

CAPABILITY_PROMPTS = {
    "extract": "Extract the requested figures and facts. Prefer tables and plain numbers.",
    "summarize": "Summarize the material for a portfolio manager in a few short paragraphs.",
    "critique": "Act as a skeptical reviewer. Look for weaknesses, red flags and missing evidence.",
    "generate": "Write a professional investment memo section from the inputs provided.",
}

JSON_REPLY = "Respond with a single JSON object."


def analyst_prompt(capability: str, json_reply: bool = False) -> str:
    """System prompt for a capability; unknown capabilities fall back to summarize / extract."""
    fallback = "extract" if json_reply else "summarize"
    instruction = CAPABILITY_PROMPTS.get(capability, CAPABILITY_PROMPTS[fallback])
    prompt = f"{ANALYST_PERSONA}\n\n{instruction}"
    return f"{prompt}\n{JSON_REPLY}" if json_reply else prompt


def _complete(
    system: str,
    prompt: str,
    json_reply: bool = False,
    model: str | None = None,
    temperature: float = 0.3,
    max_tokens: int = 2048,
) -> str:
    """One completion, retried with exponential backoff while the API is
    rate limiting or unreachable."""
    request: dict = {
        "model": model or config.OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_reply:
        request["response_format"] = {"type": "json_object"}

    attempt = 1
    while True:
        try:
            resp = get_client().chat.completions.create(**request)
            return resp.choices[0].message.content or ""
        except (RateLimitError, APIConnectionError) as e:
            if attempt >= MAX_ATTEMPTS:
                raise
            delay = BASE_DELAY * 2 ** (attempt - 1)
            log.warning("Assistant unavailable (attempt %d/%d), retrying in %ds: %s", attempt, MAX_ATTEMPTS, delay, e)
            time.sleep(delay)
            attempt += 1


def ask_analyst(prompt: str, capability: str = "summarize", **kwargs) -> str:
    """Ask the research assistant a question in one of its capability modes."""
    log.info("Asking analyst (%s): %s", capability, prompt[:120])
    return _complete(analyst_prompt(capability), prompt, **kwargs)


def ask_analyst_json(prompt: str, capability: str = "extract", **kwargs) -> dict:
    """Like ask_analyst, but the reply must be a JSON object.

    A reply that does not parse comes back as {"error", "raw"} so handlers can
    fall back to their own estimates.
    """
    log.info("Asking analyst for JSON (%s): %s", capability, prompt[:120])
    raw = _complete(analyst_prompt(capability, json_reply=True), prompt, json_reply=True, **kwargs)
    try:
        reply = json.loads(raw)
    except json.JSONDecodeError:
        log.error("Analyst returned malformed JSON: %s", raw[:500])
        return {"error": "JSON parse failed", "raw": raw[:2000]}
    if not isinstance(reply, dict):
        return {"error": "JSON reply was not an object", "raw": raw[:2000]}
    return reply
