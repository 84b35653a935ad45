"""
Typed parsing of model responses.

Model output is expected to be JSON, optionally wrapped in a Markdown code
fence. Anything that does not match the expected shape is rejected with
LLMError(unknown) rather than passed on as loosely typed data.
"""

import json
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .pipeline_models import AnalysisResult, LLMError, LLMErrorKind


_FENCE_PATTERN = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    stripped = text.strip()
    match = _FENCE_PATTERN.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Parse model output as a JSON object.

    Raises:
        LLMError: kind unknown, when the text is not a JSON object
    """
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise LLMError(LLMErrorKind.UNKNOWN, f"Model response is not valid JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise LLMError(LLMErrorKind.UNKNOWN, "Model response is not a JSON object")
    return data


def _string_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise LLMError(LLMErrorKind.UNKNOWN, f"Field '{name}' must be a list of strings")
    return list(value)


def _optional_string(data: Dict[str, Any], name: str) -> str:
    value = data.get(name, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise LLMError(LLMErrorKind.UNKNOWN, f"Field '{name}' must be a string")
    return value


@dataclass
class ProblemArtifact:
    """Normalized result of a primary analysis, the baseline for a debug pass."""

    problem_statement: str
    context: str = ""
    suggested_responses: List[str] = field(default_factory=list)
    reasoning: str = ""
    source: str = "image"
    model_used: Optional[str] = None

    @classmethod
    def from_analysis(cls, result: AnalysisResult, source: str) -> 'ProblemArtifact':
        """
        Build an artifact from model output.

        Structured JSON output is honoured when present; plain prose is kept
        verbatim as the problem statement.
        """
        text = result.text.strip()
        if not text:
            raise LLMError(LLMErrorKind.UNKNOWN, "Model returned an empty response", model_id=result.model_used)

        try:
            data = parse_json_object(text)
        except LLMError:
            return cls(problem_statement=text, source=source, model_used=result.model_used)

        body = data.get('solution', data)
        if not isinstance(body, dict):
            raise LLMError(LLMErrorKind.UNKNOWN, "Field 'solution' must be an object", model_id=result.model_used)

        statement = _optional_string(body, 'problem_statement') or _optional_string(body, 'code')
        if not statement:
            raise LLMError(LLMErrorKind.UNKNOWN, "Response is missing 'problem_statement'", model_id=result.model_used)

        return cls(
            problem_statement=statement,
            context=_optional_string(body, 'context'),
            suggested_responses=_string_list(body.get('suggested_responses'), 'suggested_responses'),
            reasoning=_optional_string(body, 'reasoning'),
            source=source,
            model_used=result.model_used,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Solution:
    """A solution object as returned by the solution and debug prompts."""

    code: str
    problem_statement: str = ""
    context: str = ""
    suggested_responses: List[str] = field(default_factory=list)
    reasoning: str = ""
    model_used: Optional[str] = None

    @classmethod
    def parse(cls, result: AnalysisResult) -> 'Solution':
        """
        Parse a `{"solution": {...}}` (or flat) JSON response.

        Raises:
            LLMError: kind unknown, on any schema mismatch
        """
        data = parse_json_object(result.text)
        body = data.get('solution', data)
        if not isinstance(body, dict):
            raise LLMError(LLMErrorKind.UNKNOWN, "Field 'solution' must be an object", model_id=result.model_used)

        code = body.get('code')
        if not isinstance(code, str) or not code.strip():
            raise LLMError(LLMErrorKind.UNKNOWN, "Response is missing 'solution.code'", model_id=result.model_used)

        return cls(
            code=code,
            problem_statement=_optional_string(body, 'problem_statement'),
            context=_optional_string(body, 'context'),
            suggested_responses=_string_list(body.get('suggested_responses'), 'suggested_responses'),
            reasoning=_optional_string(body, 'reasoning'),
            model_used=result.model_used,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'solution': asdict(self)}
