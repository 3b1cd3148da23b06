import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple, Union


# Signals sort ahead of prices that share a timestamp.
SIGNAL_PRIORITY = 0
PRICE_PRIORITY = 1


@dataclass(frozen=True)
class InstrumentKey:
    """Instrument identity: an exchange token or a feed symbol, never both."""

    token: Optional[int] = None
    symbol: Optional[str] = None

    def __post_init__(self):
        if (self.token is None) == (self.symbol is None):
            raise ValueError("InstrumentKey needs exactly one of token or symbol")

    @classmethod
    def for_token(cls, token: int) -> 'InstrumentKey':
        return cls(token=int(token))

    @classmethod
    def for_symbol(cls, symbol: str) -> 'InstrumentKey':
        return cls(symbol=symbol)

    @property
    def is_token(self) -> bool:
        return self.token is not None

    def __str__(self) -> str:
        if self.token is not None:
            return f"token:{self.token}"
        return f"symbol:{self.symbol}"


@dataclass(frozen=True)
class TickEvent:
    instrument_token: int
    last_price: float
    received_at_ms: int

    stream = 'tick'
    priority = PRICE_PRIORITY

    @property
    def price(self) -> float:
        return self.last_price

    @property
    def fingerprint(self) -> Tuple:
        return ('tick', self.instrument_token, self.last_price)


@dataclass(frozen=True)
class SignalEvent:
    symbol: str
    received_at_ms: int
    intent: Optional[str] = None
    side: Optional[str] = None
    stop_price: Optional[float] = None

    stream = 'signal'
    priority = SIGNAL_PRIORITY

    @property
    def fingerprint(self) -> Tuple:
        return ('signal', self.symbol, self.intent, self.side, self.stop_price)


@dataclass(frozen=True)
class FeedPriceEvent:
    symbol: str
    price: float
    received_at_ms: int

    stream = 'feed'
    priority = PRICE_PRIORITY

    @property
    def fingerprint(self) -> Tuple:
        return ('feed', self.symbol, self.price)


Event = Union[TickEvent, SignalEvent, FeedPriceEvent]


def now_ms() -> int:
    return int(time.time() * 1000)


def coerce_price(value: Any) -> Optional[float]:
    """Return a finite, strictly positive float or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def coerce_optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def coerce_token(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def coerce_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_timestamp_ms(value: Any) -> Optional[int]:
    """Normalise epoch ms, numeric strings, ISO-8601 strings and datetimes to epoch ms."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            return None
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return coerce_timestamp_ms(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None
        return coerce_timestamp_ms(parsed)
    return None


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _received_at(payload: Mapping[str, Any]) -> Optional[int]:
    raw = _first(payload, 'receivedAt', 'received_at', 'timestamp')
    if raw is None:
        return now_ms()
    return coerce_timestamp_ms(raw)


def decode_tick(payload: Any) -> Optional[TickEvent]:
    if not isinstance(payload, Mapping):
        return None
    token = coerce_token(_first(payload, 'instrumentToken', 'instrument_token'))
    price = coerce_price(_first(payload, 'lastPrice', 'last_price'))
    received_at = _received_at(payload)
    if token is None or price is None or received_at is None:
        return None
    return TickEvent(instrument_token=token, last_price=price, received_at_ms=received_at)


def decode_signal(payload: Any) -> Optional[SignalEvent]:
    if not isinstance(payload, Mapping):
        return None
    symbol = coerce_text(payload.get('symbol'))
    received_at = _received_at(payload)
    if symbol is None or received_at is None:
        return None
    return SignalEvent(
        symbol=symbol,
        received_at_ms=received_at,
        intent=coerce_text(payload.get('intent')),
        side=coerce_text(payload.get('side')),
        stop_price=coerce_optional_float(_first(payload, 'stopPrice', 'stop_price', 'stoppx')),
    )


def decode_feed_price(payload: Any) -> Optional[FeedPriceEvent]:
    if not isinstance(payload, Mapping):
        return None
    symbol = coerce_text(payload.get('symbol'))
    price = coerce_price(payload.get('price'))
    received_at = _received_at(payload)
    if symbol is None or price is None or received_at is None:
        return None
    return FeedPriceEvent(symbol=symbol, price=price, received_at_ms=received_at)


def ordering_key(event: Event, sequence: int = 0) -> Tuple[int, int, int]:
    return (event.received_at_ms, event.priority, sequence)
