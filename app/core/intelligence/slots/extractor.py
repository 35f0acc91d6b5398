"""
Bounded LLM parameter extraction using Claude Haiku.

Asks for specific missing fields only and gets back either a value or
null ("not stated") per field, in a single call. Failures never raise:
they come back as ExtractionResult(failed=True) with every field not stated.
"""

import json
import logging
import time
from datetime import date
from typing import Optional

from app.config import settings
from app.infra.claude import ClaudeClient, get_claude_client, ClaudeClientError
from .types import ExtractionResult

logger = logging.getLogger(__name__)


EXTRACTION_PROMPT = """Extract booking details from this dental office conversation.

## Fields Needed

{fields}

## Rules

- Only extract what the CALLER explicitly stated. Never guess or infer.
- Use null for any field that is not stated.
- Dates: ISO format YYYY-MM-DD, relative to today: {today} ({weekday})
- Times: 24-hour format HH:MM (e.g., "2pm" -> "14:00")
- Date-times: YYYY-MM-DDTHH:MM:SS
- Phone numbers: digits with dashes (e.g., "555-123-4567")

## Conversation

{conversation}

## Response

Respond with ONLY valid JSON containing exactly these keys:
{template}"""


class ParameterExtractor:
    """LLM-based extraction of specific missing parameters."""

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        """Initialize extractor.

        Args:
            claude_client: Optional Claude client (for testing)
        """
        self._client = claude_client

    async def _get_client(self) -> ClaudeClient:
        """Get or create Claude client."""
        if self._client is None:
            self._client = await get_claude_client()
        return self._client

    async def extract(
        self,
        fields: dict[str, str],
        turns: list[dict],
        function_name: str = "",
        today: Optional[date] = None,
    ) -> ExtractionResult:
        """
        Extract the given fields from recent conversation turns.

        Args:
            fields: Parameter name -> description of what it holds
            turns: Recent {"role", "content"} messages, oldest first
            function_name: Function the fields are for (logging only)
            today: Reference date for relative dates

        Returns:
            ExtractionResult with values and not-stated fields
        """
        if not fields:
            return ExtractionResult()

        names = list(fields)
        if not turns:
            return ExtractionResult(not_stated=names)

        start_time = time.time()
        prompt = self._build_prompt(fields, turns, today or date.today())

        try:
            client = await self._get_client()
            response = await client.generate(
                prompt=prompt,
                model=settings.extraction_model,
                max_tokens=300,
                temperature=0,
                use_fallback_on_error=False,
            )
        except ClaudeClientError as e:
            logger.warning(f"Extraction for {function_name} failed: {e}")
            return ExtractionResult.failure(names)

        result = self._parse_response(response.content, names)
        result.processing_time_ms = (time.time() - start_time) * 1000
        result.raw_response = response.content

        logger.info(
            f"Extraction for {function_name}: found={sorted(result.values)}, "
            f"not_stated={result.not_stated}, failed={result.failed}"
        )
        return result

    def _build_prompt(
        self,
        fields: dict[str, str],
        turns: list[dict],
        today: date,
    ) -> str:
        """Build extraction prompt."""
        field_lines = "\n".join(f"- {name}: {description}" for name, description in fields.items())

        conversation_lines = []
        for turn in turns:
            role = "Caller" if turn.get("role") == "user" else "Receptionist"
            content = str(turn.get("content", ""))[:500]
            conversation_lines.append(f"{role}: {content}")

        template = json.dumps({name: None for name in fields}, indent=4)

        return EXTRACTION_PROMPT.format(
            fields=field_lines,
            today=today.isoformat(),
            weekday=today.strftime("%A"),
            conversation="\n".join(conversation_lines),
            template=template,
        )

    def _parse_response(self, response: str, names: list[str]) -> ExtractionResult:
        """Parse LLM JSON response."""
        # Clean markdown if present
        response = response.strip()
        if response.startswith("```"):
            lines = response.split("\n")
            # Remove first line (```json or ```)
            lines = lines[1:]
            # Remove last line if it's closing ```
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            response = "\n".join(lines)
        response = response.strip()

        try:
            data = json.loads(response)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse extraction response: {e}")
            return ExtractionResult.failure(names, raw_response=response)

        if not isinstance(data, dict):
            logger.warning("Extraction response is not a JSON object")
            return ExtractionResult.failure(names, raw_response=response)

        values = {}
        not_stated = []
        for name in names:
            value = data.get(name)
            if isinstance(value, str):
                value = value.strip()
                if value.lower() in ("", "null", "none", "not stated", "unknown"):
                    value = None
            if value is None:
                not_stated.append(name)
            else:
                values[name] = value

        return ExtractionResult(values=values, not_stated=not_stated)


# Singleton
_extractor: Optional[ParameterExtractor] = None


async def get_parameter_extractor() -> ParameterExtractor:
    """Get singleton ParameterExtractor."""
    global _extractor
    if _extractor is None:
        _extractor = ParameterExtractor()
    return _extractor
