# tests/test_llm.py
"""
Tests for the OpenAI-compatible structured extractor, using a stub client.
"""
from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from evidence_engine.infra.llm import OpenAITextExtractor, build_text_extractor
from evidence_engine.interfaces import NullTextExtractor


class StubCompletions:
    def __init__(self, content):
        self.content = content
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.content is None:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


def extractor(content):
    completions = StubCompletions(content)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAITextExtractor("key", model="test-model", client=client), completions


class TestOpenAITextExtractor:

    async def test_parses_json_reply(self):
        ext, completions = extractor(json.dumps({"items": [{"title": "Tile"}]}))
        assert await ext.extract_structured("prompt", "schema") == {"items": [{"title": "Tile"}]}

        request = completions.requests[0]
        assert request["model"] == "test-model"
        assert request["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in request["messages"]] == ["system", "system", "user"]
        assert request["messages"][-1]["content"] == "prompt"

    async def test_without_schema_hint(self):
        ext, completions = extractor("[]")
        await ext.extract_structured("prompt")
        assert [m["role"] for m in completions.requests[0]["messages"]] == ["system", "user"]

    async def test_empty_reply(self):
        ext, _ = extractor(None)
        assert await ext.extract_structured("prompt") == []

    async def test_malformed_reply_raises_value_error(self):
        ext, _ = extractor("here are your items: ...")
        with pytest.raises(ValueError):
            await ext.extract_structured("prompt")


class TestBuildTextExtractor:

    def test_no_key_disables_extraction(self):
        ext = build_text_extractor(None, "gpt-4o-mini")
        assert isinstance(ext, NullTextExtractor)
        assert not ext.available

    def test_key_builds_client(self):
        ext = build_text_extractor("sk-test", "gpt-4o-mini", base_url="http://localhost:9999/v1")
        assert isinstance(ext, OpenAITextExtractor)
        assert ext.available
        assert ext.model == "gpt-4o-mini"
