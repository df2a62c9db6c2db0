"""
Agent contract used by the orchestrator.
"""

from .base import AgentRequest, AgentResponse, BaseAgent, FunctionAgent

__all__ = ['AgentRequest', 'AgentResponse', 'BaseAgent', 'FunctionAgent']
