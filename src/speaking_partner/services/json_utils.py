"""JSON extraction utilities for LLM responses."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..models.schemas import AIFeedback, StructuredMistake

logger = logging.getLogger(__name__)


class JSONExtractionError(Exception):
    """Raised when an LLM response carries no usable JSON."""
    pass


def extract_json_from_response(response: str) -> Optional[str]:
    """
    Extract JSON from LLM response, handling markdown code blocks.

    Args:
        response: Raw LLM response text

    Returns:
        Extracted JSON string or None if not found
    """
    json_block_pattern = r"```json\s*\n(.*?)\n```"
    matches = re.findall(json_block_pattern, response, re.DOTALL | re.IGNORECASE)
    if matches:
        return matches[-1].strip()

    code_block_pattern = r"```\s*\n(.*?)\n```"
    matches = re.findall(code_block_pattern, response, re.DOTALL)
    for match in reversed(matches):
        match = match.strip()
        if match.startswith("{"):
            return match

    # Balanced braces, skipping braces inside strings
    start_idx = response.find("{")
    if start_idx == -1:
        return None

    brace_count = 0
    in_string = False
    escape_next = False
    for i in range(start_idx, len(response)):
        char = response[i]

        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue

        if not in_string:
            if char == "{":
                brace_count += 1
            elif char == "}":
                brace_count -= 1
                if brace_count == 0:
                    return response[start_idx:i + 1].strip()

    return None


def load_json_object(response: str) -> Dict[str, Any]:
    """
    Parse the JSON object embedded in an LLM response.

    Raises:
        JSONExtractionError: If no JSON object can be parsed
    """
    json_str = extract_json_from_response(response)
    if not json_str:
        raise JSONExtractionError("No JSON found in response")

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        raise JSONExtractionError("JSON payload is not an object")
    return data


def _strip_json(response: str) -> str:
    """Return the prose around the JSON payload, if any."""
    json_str = extract_json_from_response(response)
    if not json_str:
        return response.strip()
    text = response.replace(json_str, "")
    text = re.sub(r"```(?:json)?\s*```", "", text, flags=re.IGNORECASE)
    return text.strip()


def _parse_mistakes(raw: Any) -> Optional[List[StructuredMistake]]:
    if raw is None:
        return None
    if not isinstance(raw, list):
        logger.warning(f"Ignoring non-list mistakes payload: {type(raw).__name__}")
        return None

    mistakes = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        fields = {
            key: (str(value) if value is not None else None)
            for key, value in item.items()
            if key in StructuredMistake.model_fields
        }
        if not fields.get("category") and item.get("grammar_category"):
            fields["category"] = str(item["grammar_category"])
        try:
            mistakes.append(StructuredMistake(**fields))
        except ValidationError as e:
            logger.warning(f"Skipping malformed mistake entry: {e}")
    return mistakes


def parse_ai_feedback(response: str) -> AIFeedback:
    """
    Turn a raw LLM reply into AIFeedback.

    Replies with a JSON object contribute structured fields
    (feedback, sentence_status, grammar_category, mistakes). Prose-only
    replies are kept as plain feedback text and left to pattern detection.
    """
    try:
        data = load_json_object(response)
    except JSONExtractionError as e:
        logger.debug(f"Reply has no structured payload ({e}); using prose")
        return AIFeedback(feedback_text=response.strip())

    feedback_text = data.get("feedback") or data.get("reply") or _strip_json(response)
    status = data.get("sentence_status") or data.get("verdict")
    category = data.get("grammar_category") or data.get("category")

    return AIFeedback(
        feedback_text=str(feedback_text).strip(),
        structured_mistakes=_parse_mistakes(data.get("mistakes")),
        structured_verdict=str(status).strip().lower() if status else None,
        grammar_category=str(category) if category else None,
    )
