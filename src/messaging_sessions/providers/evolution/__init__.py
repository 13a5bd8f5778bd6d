"""Evolution API protocol client."""

from messaging_sessions.providers.evolution.client import EvolutionProtocolClient
from messaging_sessions.providers.evolution.webhook import extract_instance_name, parse_evolution_webhook

__all__ = [
    "EvolutionProtocolClient",
    "extract_instance_name",
    "parse_evolution_webhook",
]
