"""
Agent Orchestrator - task orchestration and capacity balancing for pools of autonomous agents.
"""

__version__ = "0.1.0"
