"""
Base Agent class and Orchestrator
Review Insights Pipeline
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Dict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import traceback
import time

from models.schemas import ResourceRef, RunStats
from utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """
    State shared by the stages of one trigger run.
    Created by the trigger, threaded through every agent, dropped at run end.
    """
    request_id: str
    mode: str
    deadline: Deadline
    resources: List[ResourceRef] = field(default_factory=list)
    limit: Optional[int] = None
    force: bool = False
    stats: RunStats = field(default_factory=RunStats)
    aborted: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    def check_deadline(self) -> bool:
        """True (and marks the run aborted) once the time budget is spent."""
        if self.deadline.expired():
            if not self.aborted:
                logger.warning(f"[{self.request_id}] Time budget exhausted after "
                               f"{self.deadline.elapsed_ms}ms; stopping")
            self.aborted = True
        return self.aborted

    def resource_meta(self, resource: ResourceRef) -> Dict[str, Any]:
        return self.meta.setdefault("resources", {}).setdefault(resource.key, {})


@dataclass
class AgentResult:
    """Standardized result envelope returned by every agent."""
    agent_name: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def __repr__(self):
        status = "✅" if self.success else "❌"
        dur = f" ({self.duration_seconds:.1f}s)" if self.duration_seconds else ""
        return f"{status} {self.agent_name}{dur}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Agent(ABC):
    """
    Abstract base class for all pipeline stages.
    Subclasses implement `run(ctx)` and return the (mutated) context.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"agent.{name}")

    @abstractmethod
    def run(self, ctx: RunContext) -> RunContext:
        raise NotImplementedError

    def execute(self, ctx: RunContext) -> AgentResult:
        """
        Wraps `run()` with timing, structured logging, and error handling.
        """
        started_at = _now()
        self.logger.info(f"[{self.name}] Starting...")
        try:
            result = self.run(ctx)
            finished_at = _now()
            duration = (finished_at - started_at).total_seconds()
            self.logger.info(f"[{self.name}] Completed in {duration:.2f}s")
            return AgentResult(
                agent_name=self.name,
                success=True,
                data=result,
                started_at=started_at,
                finished_at=finished_at,
            )
        except Exception as e:
            finished_at = _now()
            self.logger.error(f"[{self.name}] Failed: {e}\n{traceback.format_exc()}")
            return AgentResult(
                agent_name=self.name,
                success=False,
                data=ctx,
                error=str(e),
                started_at=started_at,
                finished_at=finished_at,
            )

    def __repr__(self):
        return f"<Agent: {self.name}>"


class Orchestrator:
    """
    Sequential stage runner.
    Every stage receives the same RunContext; a failed stage is recorded and,
    unless `stop_on_failure` is set, the next stage still runs.
    """

    def __init__(self, agents: List[Agent], stop_on_failure: bool = True):
        self.agents = agents
        self.stop_on_failure = stop_on_failure
        self.logger = logging.getLogger("orchestrator")
        self.run_history: List[AgentResult] = []

    def execute(self, ctx: RunContext) -> AgentResult:
        """Execute every stage and return the last successful AgentResult."""
        self.run_history.clear()
        total_start = time.time()

        self.logger.info(
            f"[{ctx.request_id}] Orchestrator starting: {len(self.agents)} stage(s)"
        )

        for i, agent in enumerate(self.agents, 1):
            self.logger.info(f"  [{i}/{len(self.agents)}] {agent.name}")
            result = agent.execute(ctx)
            self.run_history.append(result)

            if not result.success:
                self.logger.error(f"  '{agent.name}' failed: {result.error}")
                if self.stop_on_failure:
                    return result

        elapsed = time.time() - total_start
        successes = sum(1 for r in self.run_history if r.success)
        self.logger.info(
            f"[{ctx.request_id}] Pipeline complete: {successes}/{len(self.agents)} succeeded "
            f"in {elapsed:.2f}s"
        )

        for result in reversed(self.run_history):
            if result.success:
                return result
        return self.run_history[-1]

    @property
    def failures(self) -> List[AgentResult]:
        return [r for r in self.run_history if not r.success]

    def summary(self) -> str:
        lines = ["Pipeline Summary:"]
        for r in self.run_history:
            lines.append(f"  {r}")
        return "\n".join(lines)
