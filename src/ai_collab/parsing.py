"""
Structured-output extraction from free-text model responses.

Models are asked for JSON but routinely wrap it in prose, markdown fences, or
get cut off mid-object. Each strategy below tries one recovery technique and
returns a ParseResult instead of raising; parse_structured() runs them in
order and reports the first success.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class ParseResult:
    """Outcome of a single parse attempt."""

    ok: bool
    value: dict[str, Any] | None = None
    strategy: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, value: dict[str, Any], strategy: str) -> "ParseResult":
        return cls(ok=True, value=value, strategy=strategy)

    @classmethod
    def failure(cls, error: str, strategy: str | None = None) -> "ParseResult":
        return cls(ok=False, error=error, strategy=strategy)


_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def _load_object(candidate: str, strategy: str) -> ParseResult:
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError as e:
        return ParseResult.failure(f"Invalid JSON: {e}", strategy)
    if not isinstance(value, dict):
        return ParseResult.failure("JSON value is not an object", strategy)
    return ParseResult.success(value, strategy)


def strict_json(text: str) -> ParseResult:
    """Parse text that is a bare JSON object."""
    text = text.strip()
    if not text.startswith("{"):
        return ParseResult.failure("Not pure JSON", "strict_json")
    return _load_object(text, "strict_json")


def fenced_block(text: str) -> ParseResult:
    """Parse the first ``` or ```json fenced block."""
    match = _FENCE_PATTERN.search(text)
    if not match:
        return ParseResult.failure("No fence found", "fenced_block")
    return _load_object(match.group(1), "fenced_block")


def brace_scan(text: str) -> ParseResult:
    """Parse the span from the first '{' to the last '}'."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return ParseResult.failure("No braces found", "brace_scan")
    return _load_object(text[start:end + 1], "brace_scan")


def brace_repair(text: str) -> ParseResult:
    """
    Repair a truncated JSON object and parse it.

    Scans from the first '{', tracking strings and open containers, then
    closes whatever is still open in reverse order.
    """
    start = text.find("{")
    if start == -1:
        return ParseResult.failure("No opening brace", "brace_repair")

    candidate = text[start:].rstrip()
    stack: list[str] = []
    in_string = False
    escape_next = False

    for char in candidate:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    if in_string:
        candidate += '"'
    # A dangling separator would still be invalid after closing
    candidate = candidate.rstrip().rstrip(",:")
    candidate += "".join(reversed(stack))
    return _load_object(candidate, "brace_repair")


STRATEGIES: tuple[Callable[[str], ParseResult], ...] = (
    strict_json,
    fenced_block,
    brace_scan,
    brace_repair,
)


def parse_structured(
    text: str,
    accept: Callable[[dict[str, Any]], bool] | None = None,
) -> ParseResult:
    """
    Run the strategy chain against a model response.

    Args:
        text: Raw model output
        accept: Optional predicate the parsed object must satisfy
                (e.g. "has a steps key"); rejected objects fall through
                to the next strategy

    Returns:
        The first accepted ParseResult, or a failure listing every attempt
    """
    if not text or not text.strip():
        return ParseResult.failure("Empty response")

    errors = []
    for strategy in STRATEGIES:
        result = strategy(text)
        if result.ok and (accept is None or accept(result.value)):
            return result
        errors.append(f"{result.strategy}: {result.error or 'rejected'}")

    return ParseResult.failure("; ".join(errors))
