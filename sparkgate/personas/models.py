"""
SparkGate -- Persona request / response models.

Only the fields the gateway reasons about are modelled; everything else
the backend returns is passed through untouched in ``extra``.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

TrainingMode = Literal["keywords", "clone", "link", "manual"]
PersonaType = Literal["creative", "expert", "user"]


class CreatePersonaRequest(BaseModel):
    """Arguments of the "create persona" tool call."""

    name: str = Field(..., min_length=1, description="Display name of the persona.")
    mode: TrainingMode = Field(..., description="How the persona is trained.")
    type: PersonaType = Field(default="expert")
    discipline: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    persona_context: Optional[str] = Field(
        default=None, description="Person to emulate (clone mode).",
    )
    context_link: Optional[str] = Field(
        default=None, description="URL to learn from (link mode).",
    )
    description: Optional[str] = None
    demo: bool = True

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="after")
    def _mode_requirements(self) -> CreatePersonaRequest:
        if self.mode == "keywords" and not self.keywords:
            raise ValueError('keywords are required when mode is "keywords"')
        if self.mode == "clone" and not self.persona_context:
            raise ValueError('persona_context is required when mode is "clone"')
        if self.mode == "link" and not self.context_link:
            raise ValueError('context_link is required when mode is "link"')
        return self

    def to_backend_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description or "AI Spark created via tool call",
            "type": self.type,
            "discipline": self.discipline,
            "tags": self.keywords,
            "personaContext": self.persona_context,
            "contextUrl": self.context_link,
            "demo": self.demo,
        }


class PersonaSummary(BaseModel):
    """Identifier + name of a persona, as listed by the backend."""

    id: str
    name: str
    extra: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_backend(cls, data: dict[str, Any]) -> PersonaSummary:
        rest = {k: v for k, v in data.items() if k not in ("id", "name")}
        return cls(id=str(data["id"]), name=str(data.get("name") or ""), extra=rest)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Arguments of the "talk to persona" tool call.

    The persona is addressed by id, or by a name resolved with fuzzy
    matching when no id is given.
    """

    message: str = Field(..., min_length=1)
    persona_id: Optional[str] = None
    persona_name: Optional[str] = None
    history: list[ChatMessage] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _target_required(self) -> ChatRequest:
        if not self.persona_id and not (self.persona_name and self.persona_name.strip()):
            raise ValueError("either persona_id or persona_name is required")
        return self

    def to_messages(self) -> list[dict[str, str]]:
        messages = [m.model_dump() for m in self.history]
        messages.append({"role": "user", "content": self.message})
        return messages


TERMINAL_STATUSES = frozenset({"completed", "failed", "idle"})


class PersonaStatus(BaseModel):
    """Training progress of a persona, from the public demo-state endpoint."""

    persona_id: str
    status: str = "running"
    progress: float = 0
    message: str = "Processing..."
    knowledge: list[Any] = Field(default_factory=list)
    spark: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_ready(self) -> bool:
        return self.status in ("completed", "idle")

    @classmethod
    def from_demo_state(cls, persona_id: str, data: dict[str, Any]) -> PersonaStatus:
        collection = data.get("collectionStatus") or {}
        status = collection.get("status") or "running"
        return cls(
            persona_id=persona_id,
            status=status,
            progress=100 if status == "completed" else collection.get("progress") or 0,
            message=collection.get("message") or "Processing...",
            knowledge=data.get("portfolioItems") or [],
            spark=data.get("spark"),
        )
