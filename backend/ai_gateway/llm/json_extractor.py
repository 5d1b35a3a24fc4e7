"""JSON extraction from free-form completion text.

Models often wrap JSON in markdown fences or surround it with prose. The
extractor peels those layers off, parses the object and, when a pydantic
model is supplied, validates it. Pure function with no I/O.

Steps, in order (the failing one is named in the raised error):
- input: text is empty or not a string
- fence: a ```json ... ``` block is unwrapped if present
- locate: slice from the first "{" to the last "}"
- parse: json.loads
- validate: schema.model_validate
"""

import json
import re
from typing import Any, TypeVar, overload

from pydantic import BaseModel, ValidationError

from .errors import ExtractionError

M = TypeVar("M", bound=BaseModel)

PREVIEW_CHARS = 500

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS]


@overload
def extract_json(text: str, schema: None = None) -> Any: ...


@overload
def extract_json(text: str, schema: type[M]) -> M: ...


def extract_json(text: str, schema: type[M] | None = None) -> Any:
    """Extract one JSON object from text and optionally validate it.

    Args:
        text: Completion text expected to contain a JSON object.
        schema: Optional pydantic model the object must conform to.

    Returns:
        The parsed JSON value, or a validated model instance if schema is given.

    Raises:
        ExtractionError: With ``step`` naming the failing step and a bounded
            ``preview`` of the offending text.
    """
    if not isinstance(text, str) or not text.strip():
        raise ExtractionError("No text to extract JSON from", step="input", preview="")

    candidate = text.strip()

    fence = _FENCE_RE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()

    first = candidate.find("{")
    last = candidate.rfind("}")
    if first != -1 and last > first:
        candidate = candidate[first : last + 1]
    elif first == -1 and not candidate.startswith("["):
        raise ExtractionError(
            "No JSON object found in response",
            step="locate",
            preview=_preview(text),
        )

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ExtractionError(
            f"Failed to parse JSON from response: {e.msg} at position {e.pos}",
            step="parse",
            preview=_preview(candidate),
        ) from e

    if schema is None:
        return data

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ExtractionError(
            f"Schema validation failed: {problems}",
            step="validate",
            preview=_preview(candidate),
        ) from e
