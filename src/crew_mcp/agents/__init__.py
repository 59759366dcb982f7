"""Agent definition models and discovery exports."""

from .loader import AgentLoadError, AgentLoader, discover_agents, parse_front_matter
from .models import AgentDefinition

__all__ = [
    "AgentDefinition",
    "AgentLoadError",
    "AgentLoader",
    "discover_agents",
    "parse_front_matter",
]
