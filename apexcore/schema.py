"""
Schema Validation

The boundary between untrusted provider output and typed task results.
Provider payloads are cleaned, parsed and validated against an
OutputContract, producing a tagged ValidatedOutput or ValidationFailure.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, ValidationError, create_model


_THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL | re.IGNORECASE)


class OutputContract:
    """
    The declared output schema of a task.

    Wraps a pydantic model class. Contracts are opaque configuration to the
    core: feature call sites own the actual field definitions.

    Example:
        class WorldState(BaseModel):
            scenario: str
            entities: List[Entity]

        contract = OutputContract(WorldState)

        # Or from a field mapping
        contract = OutputContract.from_fields("Summary", {"summary": (str, ...)})
    """

    def __init__(self, model: Type[BaseModel], name: Optional[str] = None):
        if not (isinstance(model, type) and issubclass(model, BaseModel)):
            raise TypeError(f"OutputContract requires a pydantic model class, got {model!r}")
        self.model = model
        self.name = name or model.__name__

    @classmethod
    def from_fields(cls, name: str, fields: Dict[str, Tuple[Any, Any]]) -> "OutputContract":
        """Build a contract from `{field_name: (type, default)}`; use `...` for required fields."""
        return cls(create_model(name, **fields), name=name)

    def json_schema(self) -> Dict[str, Any]:
        return self.model.model_json_schema()

    def __repr__(self) -> str:
        return f"OutputContract({self.name})"


@dataclass(frozen=True)
class ValidatedOutput:
    """A payload that conforms to its contract."""
    value: BaseModel
    thinking: Optional[str] = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ValidationFailure:
    """A payload that could not be parsed or did not match its contract."""
    reason: str

    @property
    def ok(self) -> bool:
        return False


ValidationOutcome = Union[ValidatedOutput, ValidationFailure]


def clean_model_output(raw_text: str) -> str:
    """Strip reasoning blocks and markdown code fences from raw model text."""
    if not raw_text:
        return ""
    cleaned = _THINK_PATTERN.sub("", raw_text)
    cleaned = re.sub(r"```(?:json)?", "", cleaned, flags=re.IGNORECASE)
    return cleaned.replace("```", "").strip()


def extract_reasoning_trace(raw_text: str) -> Optional[str]:
    """Return the content of the first <think> block, if any."""
    if not raw_text:
        return None
    match = _THINK_PATTERN.search(raw_text)
    return match.group(1).strip() if match else None


def find_json_object(text: str) -> Optional[str]:
    """Find the first balanced {...} object in text."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i, char in enumerate(text[start:], start):
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
                return text[start:i + 1]
    return None


# A single quote closes a string only when a delimiter or the end follows it
_CLOSING_QUOTE = re.compile(r"\s*(?:[:,\}\]]|$)")


def _requote(text: str) -> str:
    """Rewrite 'single-quoted' strings as JSON strings, leaving apostrophes inside words alone."""
    out = []
    i = 0
    in_double = False
    while i < len(text):
        ch = text[i]
        if in_double:
            out.append(ch)
            if ch == "\\":
                out.append(text[i + 1:i + 2])
                i += 2
                continue
            in_double = ch != '"'
            i += 1
        elif ch == '"':
            in_double = True
            out.append(ch)
            i += 1
        elif ch == "'":
            body = []
            j = i + 1
            while j < len(text):
                c = text[j]
                if c == "\\" and j + 1 < len(text):
                    body.append("'" if text[j + 1] == "'" else text[j:j + 2])
                    j += 2
                    continue
                if c == "'" and _CLOSING_QUOTE.match(text, j + 1):
                    break
                body.append('\\"' if c == '"' else c)
                j += 1
            else:
                # Unterminated, leave the rest as it is
                out.append(text[i:])
                break
            out.append('"' + "".join(body) + '"')
            i = j + 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def repair_json(text: str) -> str:
    """Attempt to fix common JSON issues produced by smaller models."""
    # Remove trailing commas before } or ]
    text = re.sub(r",\s*([\}\]])", r"\1", text)
    # Single-quoted strings to double-quoted
    text = _requote(text)
    # Fix unquoted keys
    text = re.sub(r"(\{|,)\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:", r'\1 "\2":', text)
    return text


def parse_json_payload(raw_text: str) -> Any:
    """
    Parse a JSON document out of raw model text.

    Raises:
        ValueError: If no JSON object can be recovered
    """
    cleaned = clean_model_output(raw_text)
    candidates = [cleaned]
    embedded = find_json_object(cleaned)
    if embedded and embedded != cleaned:
        candidates.append(embedded)

    for candidate in candidates:
        for attempt in range(2):
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                if attempt == 0:
                    candidate = repair_json(candidate)

    raise ValueError(f"No JSON object found in response: {raw_text[:100]!r}")


def validate(payload: Any, contract: OutputContract) -> ValidationOutcome:
    """
    Validate a provider payload against a contract.

    Accepts raw text, already-decoded JSON data, or an instance of the
    contract's model. Never raises.
    """
    thinking = None

    if isinstance(payload, contract.model):
        return ValidatedOutput(value=payload)

    if isinstance(payload, BaseModel):
        payload = payload.model_dump()

    if isinstance(payload, (str, bytes)):
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        thinking = extract_reasoning_trace(text)
        try:
            payload = parse_json_payload(text)
        except ValueError as e:
            return ValidationFailure(reason=str(e))

    if payload is None:
        return ValidationFailure(reason="Empty payload")

    try:
        value = contract.model.model_validate(payload)
    except ValidationError as e:
        return ValidationFailure(reason=f"{contract.name}: {e.error_count()} validation error(s): {_summarize(e)}")

    return ValidatedOutput(value=value, thinking=thinking)


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors()[:3]:
        location = ".".join(str(p) for p in item.get("loc", ())) or "<root>"
        parts.append(f"{location}: {item.get('msg', '')}")
    return "; ".join(parts)
