from .base import Agent, AgentResult, Orchestrator, RunContext
from .sync import SyncAgent
from .analysis import AnalysisAgent

__all__ = [
    "Agent", "AgentResult", "Orchestrator", "RunContext",
    "SyncAgent", "AnalysisAgent",
]
