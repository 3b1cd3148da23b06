from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class OrderAction(Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


@dataclass(frozen=True)
class OrderNotification:
    """Request for the external execution endpoint to enter or exit a live position."""

    action: OrderAction
    symbol: str
    reference_price: float
    at_ms: int
    quantity: Optional[float] = None
    reason: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        # Wire shape expected by the live-signal endpoint.
        return {
            'kind': self.action.value,
            'symbol': self.symbol,
            'refPrice': self.reference_price,
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'symbol': self.symbol,
            'reference_price': self.reference_price,
            'at_ms': self.at_ms,
            'quantity': self.quantity,
            'reason': self.reason,
        }
