from __future__ import annotations

import ast
import json
import logging
from datetime import datetime
from email.utils import parsedate_to_datetime

from discovery.constants import LLM_MAX_TOKENS, LLM_TEMPERATURE

logger = logging.getLogger(__name__)


def build_messages(contents: str, system: str | None = None) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    if contents:
        messages.append({"role": "user", "content": contents})
    return messages


def build_payload(
    model: str,
    contents: str,
    config: dict[str, object] | None = None,
    system: str | None = None,
) -> dict[str, object]:
    config = config or {}
    temperature = config.get("temperature", LLM_TEMPERATURE)
    payload: dict[str, object] = {
        "model": model,
        "messages": build_messages(contents, system=system),
        "temperature": temperature,
    }

    max_tokens = config.get("max_tokens", LLM_MAX_TOKENS)
    if isinstance(max_tokens, (int, float)) and max_tokens > 0:
        payload["max_tokens"] = int(max_tokens)

    if config.get("response_mime_type") == "application/json":
        payload["response_format"] = {"type": "json_object"}

    return payload


def parse_retry_after(value: str) -> float | None:
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    now = datetime.now(dt.tzinfo)
    return max(0.0, (dt - now).total_seconds())


def _strip_code_fence(src: str) -> str:
    cleaned = src.strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.splitlines()
    if lines and lines[0].strip().startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def _extract_json_object(src: str) -> str | None:
    start = src.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(src)):
        ch = src[idx]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return src[start : idx + 1]
    return None


def safe_json_loads(text: str) -> dict[str, object]:
    """Load a JSON object from model output, tolerating fences and chatter."""
    if not text:
        return {}

    clean_text = _strip_code_fence(text)
    candidates = [clean_text]
    extracted = _extract_json_object(clean_text)
    if extracted and extracted not in candidates:
        candidates.append(extracted)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError as e:
            logger.debug("JSON decode failed, trying fallback: %s", e)
        try:
            parsed = ast.literal_eval(candidate)
            if isinstance(parsed, dict):
                return {str(k): v for k, v in parsed.items()}
        except (ValueError, SyntaxError, MemoryError, RecursionError):
            continue
    return {}
