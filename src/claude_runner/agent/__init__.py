"""Agent process runner."""

from claude_runner.agent.runner import AgentRunner

__all__ = ["AgentRunner"]
