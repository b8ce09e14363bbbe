"""
llm.py – structured extraction through an OpenAI-compatible chat endpoint.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from ..interfaces import NullTextExtractor, TextExtractor

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a market-intelligence extraction engine for UAE construction and "
    "interior fit-out pricing. Extract only facts present in the supplied "
    "content. Respond with a single JSON object and nothing else."
)


class OpenAITextExtractor(TextExtractor):
    """Sends a prompt, parses the JSON reply. Errors propagate to the caller."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self._client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=max_retries
        )

    async def extract_structured(self, prompt: str, schema_hint: str = "") -> Any:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        if schema_hint:
            messages.append({"role": "system", "content": f"Response shape: {schema_hint}"})
        messages.append({"role": "user", "content": prompt})

        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            response_format={"type": "json_object"},
            temperature=0.0,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            return []
        return json.loads(content)

    async def close(self) -> None:
        await self._client.close()


def build_text_extractor(api_key: Optional[str], model: str, base_url: Optional[str] = None) -> TextExtractor:
    if not api_key:
        logger.info("No LLM_API_KEY configured; structured extraction disabled")
        return NullTextExtractor()
    return OpenAITextExtractor(api_key, model=model, base_url=base_url)
