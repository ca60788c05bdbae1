"""
OpenAI-backed collaborators for the conversation engine.

``OpenAIConversationGenerator`` turns (persona, structured context, inbound
text) into a validated ``GeneratorResult``. The model is forced to answer
through a single ``send_response`` tool call; whatever comes back is parsed
and validated here, and anything off-shape surfaces as ``GenerationError``.

``OpenAIEmbedder`` turns a profile summary into a vector for the scorer.
"""

import json
import logging
from typing import Any

import openai
from openai import OpenAI
from pydantic import ValidationError

from ..errors import GenerationError
from ..schemas import GeneratorResult

logger = logging.getLogger(__name__)

MATCHMAKER_PERSONA = """You are Samantha, a warm and proactive SMS matchmaker. You learn about people through natural
conversation and set up same-day dates with compatible people.

- Keep messages short, casual and friendly, one question at a time.
- Onboarding: learn first name, birth date, gender, city, who they want to date and an age range.
- Then ask open questions about values, lifestyle, interests and dealbreakers; record each answer.
- Summarize what you learned every few exchanges.
- When the context says availability was asked today, find out whether they are free tonight.
- Never ask for full names, addresses or financial details.

Always answer by calling send_response."""

SEND_RESPONSE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "send_response",
        "description": "Send a reply to the user and update the conversation state.",
        "parameters": {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "The SMS reply to send."},
                "next_state": {
                    "type": "string",
                    "enum": ["new", "onboarding", "gathering_preferences", "active", "available_tonight"],
                },
                "context_updates": {"type": "object", "description": "Keys to set in the conversation context."},
                "actions": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["recompute_embedding", "check_availability", "find_matches"]},
                },
                "profile_updates": {
                    "type": "object",
                    "properties": {
                        "display_name": {"type": "string"},
                        "birth_date": {"type": "string", "description": "YYYY-MM-DD"},
                        "gender": {"type": "string"},
                        "city": {"type": "string"},
                        "bio": {"type": "string"},
                    },
                },
                "preference_updates": {
                    "type": "object",
                    "properties": {
                        "orientation": {"type": "string"},
                        "accepted_genders": {"type": "array", "items": {"type": "string"}},
                        "min_age": {"type": "integer"},
                        "max_age": {"type": "integer"},
                        "max_distance_miles": {"type": "integer"},
                        "dealbreakers": {"type": "array", "items": {"type": "string"}},
                    },
                },
                "new_answers": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "question": {"type": "string"},
                            "answer": {"type": "string"},
                            "category": {"type": "string", "enum": ["values", "lifestyle", "interests", "dealbreakers", "general"]},
                        },
                        "required": ["question", "answer"],
                    },
                },
            },
            "required": ["message", "next_state"],
        },
    },
}


def parse_tool_arguments(arguments: str | None) -> GeneratorResult:
    if not arguments:
        raise GenerationError("Generator returned no tool arguments")
    try:
        data = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise GenerationError(f"Generator returned invalid JSON: {exc}", raw=arguments) from exc
    if not isinstance(data, dict):
        raise GenerationError("Generator arguments must be a JSON object", raw=arguments)
    try:
        return GeneratorResult.model_validate(data)
    except ValidationError as exc:
        raise GenerationError(f"Generator result failed validation: {exc.error_count()} errors", raw=arguments) from exc


class OpenAIConversationGenerator:
    def __init__(self, api_key: str, model: str, *, timeout: float = 30.0, temperature: float = 0.7, max_tokens: int = 300) -> None:
        if not api_key:
            raise GenerationError("OPENAI_API_KEY not configured")
        self._client = OpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate(self, context: dict[str, Any], message: str, persona: str = MATCHMAKER_PERSONA) -> GeneratorResult:
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": persona},
                    {"role": "system", "content": f"Current context: {json.dumps(context, default=str)}"},
                    {"role": "user", "content": message},
                ],
                tools=[SEND_RESPONSE_TOOL],
                tool_choice={"type": "function", "function": {"name": "send_response"}},
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as exc:
            raise GenerationError(f"OpenAI request failed: {exc}") from exc

        if not completion.choices:
            raise GenerationError("OpenAI returned no choices")
        tool_calls = completion.choices[0].message.tool_calls or []
        if not tool_calls:
            raise GenerationError("OpenAI returned no tool call")
        return parse_tool_arguments(tool_calls[0].function.arguments)

    def close(self) -> None:
        self._client.close()


class OpenAIEmbedder:
    def __init__(self, api_key: str, model: str, *, timeout: float = 30.0) -> None:
        if not api_key:
            raise GenerationError("OPENAI_API_KEY not configured")
        self._client = OpenAI(api_key=api_key, timeout=timeout)
        self.model = model

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embeddings.create(model=self.model, input=text)
        except openai.OpenAIError as exc:
            raise GenerationError(f"OpenAI embedding request failed: {exc}") from exc
        if not response.data:
            raise GenerationError("OpenAI returned no embedding")
        return [float(x) for x in response.data[0].embedding]

    def close(self) -> None:
        self._client.close()
