"""
JSON utilities for cleaning LLM responses.
"""

import json
import re
from typing import Any, Optional, Pattern

_ARRAY_PATTERN = re.compile(r'\[[\s\S]*\]')
_OBJECT_PATTERN = re.compile(r'\{[\s\S]*\}')


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def _parse_first(pattern: Pattern[str], response: Optional[str]) -> Optional[Any]:
    match = pattern.search(clean_json_response(response or ''))
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None


def extract_json_array(response: Optional[str]) -> Optional[Any]:
    """Parse the first `[...]` span of an LLM response.

    Args:
        response: Raw LLM response, possibly wrapped in prose or code fences

    Returns:
        Parsed JSON value, or None when no array is present or it does not parse
    """
    return _parse_first(_ARRAY_PATTERN, response)


def extract_json_object(response: Optional[str]) -> Optional[Any]:
    """Parse the first `{...}` span of an LLM response."""
    return _parse_first(_OBJECT_PATTERN, response)
