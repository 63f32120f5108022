"""Repair and validate structured payloads returned as free text by generative models."""

import json
import re
from typing import TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

_OPENING_FENCE = re.compile(r"^```[\w-]*[ \t]*\n?")
_CLOSING_FENCE = re.compile(r"\n?```\s*$")


class PayloadParseError(ValueError):
    pass


def strip_code_fences(text: str) -> str:
    """Remove a leading ```lang fence and a trailing ``` fence, if present."""
    cleaned = text.strip()
    cleaned = _OPENING_FENCE.sub("", cleaned, count=1)
    cleaned = _CLOSING_FENCE.sub("", cleaned, count=1)
    return cleaned.strip()


def parse_payload(text: str | None, model: type[T]) -> T:
    if not text or not text.strip():
        raise PayloadParseError("Model returned an empty response")

    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PayloadParseError(f"Response is not valid JSON: {e}") from e

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadParseError(f"Response does not match {model.__name__}: {e}") from e
