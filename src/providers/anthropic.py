import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .base import BaseHTTPClient, MalformedResponseError
from .prompts import ANALYSIS_PROMPTS, PARSER_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
API_VERSION = "2023-06-01"
PARSE_TIMEOUT = 30.0
ANALYZE_TIMEOUT = 45.0

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BARE_JSON_RE = re.compile(r"(\[[\s\S]*\]|\{[\s\S]*\})")


@dataclass
class LLMResult:
    data: Any
    input_tokens: int = 0
    output_tokens: int = 0


def extract_json(text: str) -> Any:
    """Pull a JSON value out of a model reply.

    Tries the raw text, then a markdown fence, then the outermost bracketed
    span. Returns ``{"error": "PARSE_FAILED", ...}`` when nothing parses.
    """
    try:
        return json.loads(text)
    except ValueError:
        pass

    m = _FENCE_RE.search(text)
    if m:
        try:
            return json.loads(m.group(1).strip())
        except ValueError:
            pass

    m = _BARE_JSON_RE.search(text)
    if m:
        try:
            return json.loads(m.group(1))
        except ValueError:
            pass

    return {"error": "PARSE_FAILED", "message": "Could not extract JSON from model response"}


class AnthropicClient(BaseHTTPClient):
    """Messages API client for trade parsing and analysis."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: str = "https://api.anthropic.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PARSE_TIMEOUT,
    ) -> None:
        super().__init__(provider_name="anthropic", base_url=base_url, client=client, timeout=timeout)
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "").strip()
        self._model = model or os.getenv("CLAUDE_MODEL", DEFAULT_MODEL)
        if not self._api_key:
            logger.warning("ANTHROPIC_API_KEY not set; calls will fail until configured.")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def complete(self, system: str, content: str, max_tokens: int = 2000, timeout: Optional[float] = None) -> LLMResult:
        payload = {
            "model": self._model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": content}],
        }
        data = await self._request("POST", "/messages", json_body=payload, timeout=timeout)

        blocks = data.get("content") or []
        text = next((b.get("text") for b in blocks if isinstance(b, dict) and b.get("text")), None)
        if not text:
            raise MalformedResponseError("Empty response from model")

        usage = data.get("usage") or {}
        return LLMResult(
            data=extract_json(text),
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
        )

    async def parse_trades(self, raw_text: str) -> LLMResult:
        return await self.complete(PARSER_SYSTEM_PROMPT, raw_text, max_tokens=2000, timeout=PARSE_TIMEOUT)

    async def analyze_trades(self, trades: List[Dict[str, Any]], analysis_type: str) -> LLMResult:
        system = ANALYSIS_PROMPTS.get(analysis_type)
        if system is None:
            raise ValueError(f"Unknown analysis type: {analysis_type}")
        content = json.dumps({"trades": trades}, ensure_ascii=False)
        return await self.complete(system, content, max_tokens=4000, timeout=ANALYZE_TIMEOUT)
