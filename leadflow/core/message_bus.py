"""In-memory message hub delivering agent-to-agent messages."""
from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Deque, Dict, List, Optional, Protocol

from leadflow.core.errors import AgentNotFoundError
from leadflow.core.models import AgentMessage, ensure_valid_message

if TYPE_CHECKING:
    from leadflow.orchestration.run import ExecutionRun

logger = logging.getLogger(__name__)


class Recipient(Protocol):
    """Anything that owns a mailbox."""

    @property
    def name(self) -> str: ...

    async def receive_message(self, message: AgentMessage) -> None: ...


class MessageRouter(Protocol):
    """What an agent needs from the system it is registered in."""

    async def route_message(self, message: AgentMessage) -> None: ...

    def get_run(self, execution_id: Optional[str]) -> Optional["ExecutionRun"]: ...

    def has_agent(self, name: str) -> bool: ...


class A2AMessageBus:
    """Name-keyed directory of mailboxes plus a bounded delivery history."""

    def __init__(self, history_size: int = 1000) -> None:
        self._recipients: Dict[str, Recipient] = {}
        self._history: Deque[AgentMessage] = deque(maxlen=history_size)
        self._delivered = 0

    def register(self, recipient: Recipient) -> None:
        """Ensure a mailbox exists for the recipient."""
        self._recipients[recipient.name] = recipient

    def unregister(self, name: str) -> None:
        """Remove the mailbox to stop further deliveries."""
        self._recipients.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._recipients

    @property
    def names(self) -> List[str]:
        return list(self._recipients)

    async def send(self, message: AgentMessage) -> None:
        """Deliver to the named recipient; unknown names are a configuration bug."""
        ensure_valid_message(message)
        recipient = self._recipients.get(message.recipient)
        if recipient is None:
            logger.error(f"Cannot route {message.id} from {message.sender}: no agent named {message.recipient!r}")
            raise AgentNotFoundError(message.recipient)
        self._history.append(message)
        self._delivered += 1
        await recipient.receive_message(message)

    @property
    def delivered_count(self) -> int:
        return self._delivered

    def history(self, limit: Optional[int] = None) -> List[AgentMessage]:
        items = list(self._history)
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    @property
    def last_activity(self):
        return self._history[-1].timestamp if self._history else None

    def clear_history(self) -> None:
        self._history.clear()

    def clear(self) -> None:
        self._recipients.clear()
        self._history.clear()
        self._delivered = 0
