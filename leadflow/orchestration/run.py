"""Arena entry binding a run's context to its tracker."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from leadflow.core.models import SharedContext
from leadflow.orchestration.tracker import ExecutionTracker


@dataclass(slots=True)
class ExecutionRun:
    """Everything agents need for one execution, looked up by ``execution_id``.

    Agents never keep a run on ``self``; each message carries the id and the
    run is resolved per message, so concurrent runs cannot overwrite each
    other's context.
    """

    context: SharedContext
    tracker: ExecutionTracker
    routing_attempts: Dict[str, int] = field(default_factory=dict)

    @property
    def execution_id(self) -> str:
        return self.tracker.execution_id

    @property
    def lead_id(self) -> str:
        return self.context.lead_id

    @property
    def is_live(self) -> bool:
        return not self.tracker.is_complete

    def attempts_for(self, agent_name: str) -> int:
        return self.routing_attempts.get(agent_name, 0)

    def count_attempt(self, agent_name: str) -> int:
        self.routing_attempts[agent_name] = self.attempts_for(agent_name) + 1
        return self.routing_attempts[agent_name]

    def reset_attempts(self) -> None:
        self.routing_attempts.clear()
