from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from pydantic import BaseModel, ValidationError


T = TypeVar("T", bound=BaseModel)

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SNIPPET_CHARS = 280


@dataclass(frozen=True)
class ParseSuccess(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class ParseFailure:
    error: str
    snippet: str
    ok: bool = False


ParseResult = Union[ParseSuccess[T], ParseFailure]


def _snippet(value: str) -> str:
    return value if len(value) <= _SNIPPET_CHARS else f"{value[:_SNIPPET_CHARS]}…"


def _balanced_object(text: str) -> str | None:
    # Scan from the first '{' to its matching '}', ignoring braces inside strings.
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    # Unbalanced output (usually truncated); fall back to the outermost braces.
    end = text.rfind("}")
    if end > start:
        return text[start : end + 1]
    return None


def _normalize(candidate: str) -> str:
    candidate = candidate.replace("“", '"').replace("”", '"')
    candidate = candidate.replace("‘", "'").replace("’", "'")
    return _TRAILING_COMMA_RE.sub(r"\1", candidate).strip()


def extract_json_candidate(raw: str) -> str | None:
    """Return the most plausible JSON object substring in a model response."""
    trimmed = raw.strip()
    fenced = _FENCED_BLOCK_RE.search(trimmed)
    if fenced:
        candidate = _balanced_object(fenced.group(1))
        if candidate is not None:
            return candidate
    return _balanced_object(trimmed)


def parse_json_response(raw: str, schema: type[T], *, label: str = "model response") -> ParseResult[T]:
    if not raw or not raw.strip():
        return ParseFailure(error=f"{label} is empty", snippet="")

    candidate = extract_json_candidate(raw)
    if candidate is None:
        return ParseFailure(error=f"{label} contains no JSON object", snippet=_snippet(raw.strip()))

    # Curly quotes are valid inside CJK strings, so normalize only if the strict parse fails.
    parsed: object = None
    errors: list[str] = []
    for attempt in (candidate, _normalize(candidate)):
        try:
            parsed = json.loads(attempt)
            break
        except json.JSONDecodeError as exc:
            errors.append(str(exc))
    else:
        return ParseFailure(
            error=f"{label} JSON parsing failed: {errors[-1]}",
            snippet=_snippet(candidate),
        )

    try:
        return ParseSuccess(value=schema.model_validate(parsed))
    except ValidationError as exc:
        issues = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '(root)'}: {err['msg']}"
            for err in exc.errors()
        )
        return ParseFailure(
            error=f"{label} failed schema validation: {issues}",
            snippet=_snippet(candidate),
        )
