"""Streaming session orchestration for tool-executing agents."""

from agent_session_bridge.application.orchestrator import (
    SessionOrchestrator,
    create_orchestrator,
)

__all__ = ["SessionOrchestrator", "create_orchestrator"]
