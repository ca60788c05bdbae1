from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ConversationStateName = Literal["new", "onboarding", "gathering_preferences", "active", "available_tonight"]
ActionName = Literal["recompute_embedding", "check_availability", "find_matches"]


class ConversationContext(BaseModel):
    """Per-user conversational memory.

    Known keys are typed fields; anything else the generator invents lives in
    ``extras``. Stored and handed to the generator as one flat mapping.
    """

    model_config = ConfigDict(extra="forbid")

    onboarding_step: int | None = None
    questions_asked: list[str] | None = None
    pending_questions: list[str] | None = None
    last_summary: str | None = None
    exchanges_since_summary: int | None = None
    availability_asked_on: str | None = None
    expecting_availability_response: bool | None = None
    available_tonight: bool | None = None
    preferred_time: str | None = None
    extras: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def named_keys(cls) -> set[str]:
        return set(cls.model_fields) - {"extras"}

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> "ConversationContext":
        data = data or {}
        named = {k: v for k, v in data.items() if k in cls.named_keys()}
        extras = {k: v for k, v in data.items() if k not in cls.named_keys() and k != "extras"}
        return cls.model_validate({**named, "extras": extras})

    def as_mapping(self) -> dict[str, Any]:
        out = self.model_dump(exclude={"extras"}, exclude_none=True)
        out.update(self.extras)
        return out


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    display_name: str | None = Field(default=None, max_length=80)
    birth_date: date | None = None
    gender: str | None = Field(default=None, max_length=40)
    city: str | None = Field(default=None, max_length=120)
    bio: str | None = Field(default=None, max_length=2000)


class PreferenceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    orientation: str | None = Field(default=None, max_length=40)
    accepted_genders: list[str] | None = None
    min_age: int | None = Field(default=None, ge=18, le=120)
    max_age: int | None = Field(default=None, ge=18, le=120)
    max_distance_miles: int | None = Field(default=None, ge=0, le=500)
    dealbreakers: list[str] | None = None

    @model_validator(mode="after")
    def _age_range_ordered(self) -> "PreferenceUpdate":
        if self.min_age is not None and self.max_age is not None and self.min_age > self.max_age:
            raise ValueError("min_age must not exceed max_age")
        return self


class NewAnswer(BaseModel):
    question: str = Field(min_length=1, max_length=500)
    answer: str = Field(min_length=1, max_length=2000)
    category: str = Field(default="general", max_length=40)


class GeneratorResult(BaseModel):
    """Structured output of one conversational turn. Nothing here is trusted until validated."""

    model_config = ConfigDict(extra="ignore")

    message: str = Field(min_length=1, max_length=1600)
    next_state: ConversationStateName
    context_updates: dict[str, Any] = Field(default_factory=dict)
    actions: list[ActionName] = Field(default_factory=list)
    profile_updates: ProfileUpdate | None = None
    preference_updates: PreferenceUpdate | None = None
    new_answers: list[NewAnswer] = Field(default_factory=list)
