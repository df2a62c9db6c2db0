"""
Agent Orchestrator API module.

This module provides REST API endpoints for submitting tasks, managing
agents and inspecting capacity.
"""

from .main import create_app, run

__all__ = ["create_app", "run"]
