"""Summarization collaborator: turns representative texts into a topic synthesis."""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from typing import Optional, Protocol

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from discovery.config import DiscoveryConfig
from discovery.constants import (
    CLUSTER_REPRESENTATIVE_MAX_CHARS,
    LLM_CONNECT_TIMEOUT,
    LLM_HTTP_TIMEOUT,
    LLM_HTTP_USER_AGENT,
    LLM_MAX_RETRIES,
    LLM_MAX_TOKENS,
    LLM_MIN_REQUEST_INTERVAL,
    LLM_TEMPERATURE,
    LLM_TITLE_MAX_CHARS,
    RATE_LIMIT_ERROR_BACKOFF_BASE,
    RATE_LIMIT_ERROR_BACKOFF_MAX,
)
from discovery.errors import SynthesisQuotaError, TransientUpstreamFailure
from discovery.llm_utils import build_payload, parse_retry_after, safe_json_loads
from discovery.models import Synthesis

logger = logging.getLogger(__name__)


class SummarizationService(Protocol):
    async def synthesize(self, representative_texts: Sequence[str]) -> Synthesis: ...


SYSTEM_PROMPT = (
    "You summarize clusters of social media posts for a civic discussion app. "
    "Be neutral and specific. Respond with JSON only."
)


def build_prompt(representative_texts: Sequence[str]) -> str:
    lines = []
    for idx, text in enumerate(representative_texts, start=1):
        snippet = " ".join(text.split())[:CLUSTER_REPRESENTATIVE_MAX_CHARS]
        lines.append(f'{idx}. "{snippet}"')
    posts = "\n".join(lines)
    return f"""Analyze this cluster of similar posts.

POSTS IN CLUSTER:
{posts}

Respond with JSON only:
{{
    "title": "clear, neutral topic title (max {LLM_TITLE_MAX_CHARS} chars)",
    "prevailingPosition": "the majority viewpoint emerging from these posts",
    "leadingCritique": "the strongest dissenting viewpoint or concern being raised"
}}"""


def parse_synthesis(text: str) -> Synthesis:
    data = safe_json_loads(text)
    title = data.get("title")
    prevailing = data.get("prevailingPosition", data.get("prevailing_position"))
    critique = data.get("leadingCritique", data.get("leading_critique"))
    if not all(isinstance(v, str) and v.strip() for v in (title, prevailing, critique)):
        raise TransientUpstreamFailure("Incomplete synthesis in model response")
    assert isinstance(title, str) and isinstance(prevailing, str) and isinstance(critique, str)
    clean_title = " ".join(title.split())[:LLM_TITLE_MAX_CHARS].rstrip(" ,&/")
    return Synthesis(
        title=clean_title,
        prevailing_position=prevailing.strip(),
        leading_critique=critique.strip(),
    )


_RETRY_WAIT = wait_random_exponential(
    min=RATE_LIMIT_ERROR_BACKOFF_BASE, max=RATE_LIMIT_ERROR_BACKOFF_MAX
)


def _retry_wait(retry_state: RetryCallState) -> float:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    if isinstance(exc, TransientUpstreamFailure) and exc.cooldown is not None:
        return exc.cooldown
    return _RETRY_WAIT(retry_state)


def _extract_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str):
                return msg.strip()
    return resp.text.strip()


class LLMSummarizer:
    """OpenAI-compatible chat-completions client with retry and rate limiting."""

    def __init__(
        self,
        config: DiscoveryConfig,
        api_key: Optional[str] = None,
        max_retries: int = LLM_MAX_RETRIES,
    ) -> None:
        self.url = config.llm_api_url
        self.model = config.llm_model
        self.timeout = max(LLM_HTTP_TIMEOUT, config.llm_timeout)
        self.api_key = (
            api_key
            if api_key is not None
            else os.environ.get("LLM_API_KEY") or os.environ.get("GROQ_API_KEY")
        )
        self.max_retries = max_retries
        self._limiter = AsyncLimiter(1, max(0.1, LLM_MIN_REQUEST_INTERVAL))

    async def synthesize(self, representative_texts: Sequence[str]) -> Synthesis:
        if not self.api_key:
            raise TransientUpstreamFailure("LLM_API_KEY not set, summarization unavailable")
        if not representative_texts:
            raise ValueError("synthesize requires at least one text")
        # No deadline here: the caller bounds the wait and caches late results.
        text = await self._complete(build_prompt(representative_texts))
        return parse_synthesis(text)

    async def _complete(self, prompt: str) -> str:
        payload = build_payload(
            model=self.model,
            contents=prompt,
            config={
                "temperature": LLM_TEMPERATURE,
                "max_tokens": LLM_MAX_TOKENS,
                "response_mime_type": "application/json",
            },
            system=SYSTEM_PROMPT,
        )
        timeout = httpx.Timeout(self.timeout, connect=LLM_CONNECT_TIMEOUT)

        async with httpx.AsyncClient(timeout=timeout) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                retry=retry_if_exception_type(TransientUpstreamFailure),
                wait=_retry_wait,
                reraise=True,
            ):
                with attempt:
                    try:
                        async with self._limiter:
                            resp = await client.post(
                                self.url,
                                headers={
                                    "Authorization": f"Bearer {self.api_key}",
                                    "Content-Type": "application/json",
                                    "User-Agent": LLM_HTTP_USER_AGENT,
                                },
                                json=payload,
                            )
                    except httpx.HTTPError as e:
                        raise TransientUpstreamFailure(str(e)) from e

                    if resp.status_code == 200:
                        try:
                            return str(resp.json()["choices"][0]["message"]["content"])
                        except (KeyError, IndexError, TypeError, ValueError) as e:
                            raise TransientUpstreamFailure(
                                f"Malformed completion response: {e}"
                            ) from e

                    if resp.status_code == 429:
                        error_msg = _extract_error_message(resp)
                        msg_lower = error_msg.lower()
                        if "per day" in msg_lower or " tpd" in msg_lower or " rpd" in msg_lower:
                            raise SynthesisQuotaError(error_msg)
                        header = resp.headers.get("retry-after")
                        raise TransientUpstreamFailure(
                            error_msg,
                            cooldown=parse_retry_after(header) if header else None,
                            is_rate_limit=True,
                        )

                    if resp.status_code in {408, 500, 502, 503, 504}:
                        raise TransientUpstreamFailure(f"LLM API error {resp.status_code}")

                    error_msg = _extract_error_message(resp)
                    logger.error("LLM API error %d: %s", resp.status_code, error_msg)
                    return ""
        raise TransientUpstreamFailure("LLM retries exhausted")
