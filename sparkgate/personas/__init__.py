"""SparkGate -- Persona backend access."""

from sparkgate.personas.client import SparkApiClient
from sparkgate.personas.models import (
    ChatRequest,
    CreatePersonaRequest,
    PersonaStatus,
    PersonaSummary,
)
from sparkgate.personas.service import PersonaService

__all__ = [
    "ChatRequest",
    "CreatePersonaRequest",
    "PersonaStatus",
    "PersonaService",
    "PersonaSummary",
    "SparkApiClient",
]
