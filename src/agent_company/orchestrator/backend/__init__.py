"""Command execution backends."""

from agent_company.orchestrator.backend.cli_backend import CommandExecutor, parse_structured_payload

__all__ = [
    "CommandExecutor",
    "parse_structured_payload",
]
