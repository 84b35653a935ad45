"""
Prompt templates used by the request orchestrator.
"""

import json
from typing import Any, Dict

SYSTEM_PROMPT = (
    "You are Velar, a helpful assistant for any kind of problem or situation, not only coding. "
    "For any input, work out what the user is facing, state the problem clearly, give the relevant "
    "context and suggest several possible responses or next steps. Always explain your reasoning."
)

_JSON_ONLY = "Important: return ONLY the JSON object, without Markdown formatting or code fences."

_SOLUTION_SCHEMA = """{
  "solution": {
    "code": "The code or main answer.",
    "problem_statement": "The problem or situation, restated.",
    "context": "Relevant background.",
    "suggested_responses": ["First possible answer or action", "Second possible answer or action"],
    "reasoning": "Why these suggestions fit."
  }
}"""

IMAGE_ANALYSIS_PROMPT = f"""{SYSTEM_PROMPT}

Analyze these screenshots and extract the following information as JSON:
{{
  "problem_statement": "A clear statement of the problem or situation shown.",
  "context": "Relevant background from the screenshots.",
  "suggested_responses": ["First possible answer or action", "Second possible answer or action"],
  "reasoning": "Why these suggestions fit."
}}
{_JSON_ONLY}"""

AUDIO_ANALYSIS_PROMPT = (
    f"{SYSTEM_PROMPT}\n\nDescribe this audio clip in a short, concise answer, then suggest a few "
    "actions or responses the user could take next. Answer naturally; do not return JSON."
)

CHAT_PROMPT = (
    "You are a concise assistant. Answer the user's message directly and briefly. "
    "If screenshots are attached, use them as context."
)


def _dump(problem: Dict[str, Any]) -> str:
    return json.dumps(problem, indent=2, ensure_ascii=False)


def build_solution_prompt(problem: Dict[str, Any]) -> str:
    """Prompt regenerating a baseline solution from a problem artifact."""
    return (
        f"{SYSTEM_PROMPT}\n\nGiven this problem or situation:\n{_dump(problem)}\n\n"
        f"Respond in this JSON format:\n{_SOLUTION_SCHEMA}\n{_JSON_ONLY}"
    )


def build_debug_prompt(problem: Dict[str, Any], current_answer: str) -> str:
    """Prompt refining a baseline answer with the attached debug screenshots."""
    return (
        f"{SYSTEM_PROMPT}\n\nGiven:\n"
        f"1. The original problem or situation: {_dump(problem)}\n"
        f"2. The current response or approach: {current_answer}\n"
        "3. The debug information in the attached screenshots\n\n"
        f"Analyze the debug information and respond in this JSON format:\n{_SOLUTION_SCHEMA}\n{_JSON_ONLY}"
    )


def build_chat_prompt(message: str) -> str:
    return f"{CHAT_PROMPT}\n\nUser: {message}"
