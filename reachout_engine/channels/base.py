"""
Channel adapter interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class OutboundMessage:
    """What an adapter needs to deliver one message."""

    to: str
    body: str
    subject: Optional[str] = None
    from_address: Optional[str] = None
    from_name: Optional[str] = None


@dataclass
class SendResult:
    provider_id: str
    provider_status: Optional[str] = None


class ChannelAdapter(ABC):
    """Thin client for one external provider.

    ``send`` returns a SendResult carrying the provider's message id, or
    raises ProviderError. Adapters never touch the database.
    """

    provider: str = "unknown"
    channel: str = ""

    @abstractmethod
    def send(self, message: OutboundMessage) -> SendResult:
        """Deliver ``message`` to the provider."""

    def close(self) -> None:
        """Release any held connections."""
