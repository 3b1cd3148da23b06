import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from api.metrics import metrics
from ingest.events import Event, decode_feed_price, decode_signal, decode_tick

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None]]


class EventRouter:
    """Decode transport payloads and dispatch the resulting events to async handlers."""

    _STREAM_MAP = {
        'ticks': 'tick',
        'tick': 'tick',
        'webhook': 'signal',
        'signal': 'signal',
        'binance:ws': 'feed',
        'feed': 'feed',
    }

    _ALIASES = {
        'tick_handler': 'tick',
        'signal_handler': 'signal',
        'feed_handler': 'feed',
    }

    _DECODERS = {
        'tick': decode_tick,
        'signal': decode_signal,
        'feed': decode_feed_price,
    }

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register_handlers(self, **handlers: Optional[Handler]) -> None:
        """Register async callbacks per logical stream (``tick``, ``signal``, ``feed``)."""
        for key, handler in handlers.items():
            logical = self._ALIASES.get(key, key)
            if logical not in self._DECODERS:
                raise ValueError(f"Unknown logical stream '{key}'")
            if handler is None:
                continue
            self._handlers[logical] = handler

    def register_sink(self, handler: Handler) -> None:
        for logical in self._DECODERS:
            self._handlers[logical] = handler

    def decode(self, stream: str, payload: Any) -> List[Event]:
        logical = self._STREAM_MAP.get(stream)
        if logical is None:
            metrics.record_drop('unknown_stream')
            logger.debug("Ignoring payload on unknown stream %s", stream)
            return []
        # Tick batches arrive as lists; single records are accepted on every stream.
        records = payload if isinstance(payload, list) else [payload]
        decoder = self._DECODERS[logical]
        events: List[Event] = []
        for record in records:
            event = decoder(record)
            if event is None:
                metrics.record_drop('malformed')
                logger.debug("Dropping malformed %s payload: %r", logical, record)
                continue
            events.append(event)
        return events

    async def route(self, stream: str, payload: Any) -> List[Event]:
        events = self.decode(stream, payload)
        for event in events:
            handler = self._handlers.get(event.stream)
            if not handler:
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler for %s failed", event.stream)
        return events

    @classmethod
    def streams(cls) -> Mapping[str, str]:
        return dict(cls._STREAM_MAP)
