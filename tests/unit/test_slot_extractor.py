"""Tests for bounded LLM parameter extraction."""

import pytest
from unittest.mock import AsyncMock
from dataclasses import dataclass
from datetime import date

from app.core.intelligence.slots.extractor import ParameterExtractor
from app.infra.claude import ClaudeClientError


@dataclass
class MockClaudeResponse:
    """Mock Claude response."""
    content: str
    model: str = "claude-3-5-haiku-20241022"
    input_tokens: int = 100
    output_tokens: int = 50
    stop_reason: str = "end_turn"
    latency_ms: float = 50.0


TURNS = [
    {"role": "user", "content": "I need a cleaning"},
    {"role": "assistant", "content": "What day works for you?"},
    {"role": "user", "content": "Thursday afternoon if possible"},
]

FIELDS = {
    "date_start": "First day to search",
    "time_preference": "morning, afternoon, evening or HH:MM",
}


class TestParameterExtractor:
    """Test extraction of specific missing parameters."""

    @pytest.fixture
    def mock_claude_client(self):
        """Create mock Claude client."""
        return AsyncMock()

    @pytest.fixture
    def extractor(self, mock_claude_client):
        """Create extractor with mock client."""
        return ParameterExtractor(claude_client=mock_claude_client)

    def _mock_response(self, mock_client, json_response: str):
        """Helper to mock Claude response."""
        mock_client.generate.return_value = MockClaudeResponse(content=json_response)

    @pytest.mark.asyncio
    async def test_extract_values(self, extractor, mock_claude_client):
        self._mock_response(
            mock_claude_client,
            '{"date_start": "2026-03-05", "time_preference": "afternoon"}',
        )

        result = await extractor.extract(FIELDS, TURNS, "find_available_slots", date(2026, 3, 1))

        assert result.values == {"date_start": "2026-03-05", "time_preference": "afternoon"}
        assert result.not_stated == []
        assert result.failed is False

    @pytest.mark.asyncio
    async def test_not_stated_fields(self, extractor, mock_claude_client):
        """Test that null and placeholder strings mean not stated."""
        self._mock_response(
            mock_claude_client,
            '{"date_start": null, "time_preference": "unknown"}',
        )

        result = await extractor.extract(FIELDS, TURNS)

        assert result.values == {}
        assert result.not_stated == ["date_start", "time_preference"]
        assert result.failed is False

    @pytest.mark.asyncio
    async def test_markdown_fenced_json(self, extractor, mock_claude_client):
        self._mock_response(
            mock_claude_client,
            '```json\n{"date_start": "2026-03-05", "time_preference": null}\n```',
        )

        result = await extractor.extract(FIELDS, TURNS)

        assert result.values == {"date_start": "2026-03-05"}
        assert result.not_stated == ["time_preference"]

    @pytest.mark.asyncio
    async def test_unparseable_response_fails(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, "Thursday afternoon")

        result = await extractor.extract(FIELDS, TURNS)

        assert result.failed is True
        assert result.values == {}
        assert result.not_stated == ["date_start", "time_preference"]

    @pytest.mark.asyncio
    async def test_non_object_response_fails(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, '["2026-03-05"]')

        result = await extractor.extract(FIELDS, TURNS)

        assert result.failed is True

    @pytest.mark.asyncio
    async def test_api_error_fails_without_raising(self, extractor, mock_claude_client):
        mock_claude_client.generate.side_effect = ClaudeClientError("API down")

        result = await extractor.extract(FIELDS, TURNS, "find_available_slots")

        assert result.failed is True
        assert result.not_stated == ["date_start", "time_preference"]

    @pytest.mark.asyncio
    async def test_no_turns_skips_call(self, extractor, mock_claude_client):
        result = await extractor.extract(FIELDS, [])

        assert result.not_stated == ["date_start", "time_preference"]
        assert result.failed is False
        mock_claude_client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_fields_skips_call(self, extractor, mock_claude_client):
        result = await extractor.extract({}, TURNS)

        assert result.values == {}
        mock_claude_client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_prompt_names_fields_and_today(self, extractor, mock_claude_client):
        self._mock_response(mock_claude_client, '{"date_start": null, "time_preference": null}')

        await extractor.extract(FIELDS, TURNS, today=date(2026, 3, 1))

        prompt = mock_claude_client.generate.call_args.kwargs["prompt"]
        assert "- date_start: First day to search" in prompt
        assert "2026-03-01 (Sunday)" in prompt
        assert "Caller: Thursday afternoon if possible" in prompt
        assert "Receptionist: What day works for you?" in prompt
