"""Outbound delivery of formatted messages to the lead (WhatsApp, email, ...)."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from leadflow.core.models import Channel, utcnow

logger = logging.getLogger(__name__)


class OutboundChannel(Protocol):
    async def send(self, to: str, text: str, *, channel: Channel, lead_id: Optional[str] = None) -> bool: ...


@dataclass(frozen=True, slots=True)
class OutboundRecord:
    to: str
    text: str
    channel: Channel
    lead_id: Optional[str]
    sent_at: datetime = field(default_factory=utcnow)


class RecordingOutbound:
    """Keeps outbound messages in memory instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[OutboundRecord] = []

    async def send(self, to: str, text: str, *, channel: Channel, lead_id: Optional[str] = None) -> bool:
        self.sent.append(OutboundRecord(to=to, text=text, channel=channel, lead_id=lead_id))
        logger.info(f"Outbound {channel.value} message recorded for {to}")
        return True
