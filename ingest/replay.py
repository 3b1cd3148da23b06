import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from api.metrics import metrics
from ingest.event_merger import merge_streams
from ingest.event_router import EventRouter
from ingest.events import Event


logger = logging.getLogger(__name__)


class ReplaySimulator:
    """Feed recorded stream payloads through the decision engine in timestamp order.

    Records look like ``{"ts_ms": 1700000000000, "type": "ticks", "payload": {...}}``
    where ``type`` is any stream name the router understands. ``ts_ms`` is
    used as the event timestamp when the payload carries none.
    """

    def __init__(self, engine, router: EventRouter = None):
        self.engine = engine
        self.router = router or EventRouter()
        self._events: List[Event] = []

    @property
    def events(self) -> List[Event]:
        return list(self._events)

    def load_from_list(self, records: List[Dict[str, Any]]):
        decoded: List[Event] = []
        for record in records:
            if not isinstance(record, Mapping) or 'type' not in record:
                metrics.record_drop('malformed')
                logger.debug("Skipping replay record without a stream type: %r", record)
                continue
            payload = self._stamp(record.get('payload'), record.get('ts_ms'))
            decoded.extend(self.router.decode(record['type'], payload))
        self._events = merge_streams(decoded)

    def load_from_jsonl(self, path: Union[str, Path]):
        records: List[Dict[str, Any]] = []
        with Path(path).open('r', encoding='utf-8') as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except ValueError as exc:
                    logger.warning("Skipping unparsable replay line %s in %s: %s", line_no, path, exc)
        self.load_from_list(records)
        logger.info("Loaded %s replay events from %s", len(self._events), path)

    @staticmethod
    def _stamp(payload: Any, ts_ms: Any) -> Any:
        if ts_ms is None:
            return payload
        if isinstance(payload, list):
            return [ReplaySimulator._stamp(item, ts_ms) for item in payload]
        if isinstance(payload, Mapping) and not any(
            key in payload for key in ('receivedAt', 'received_at', 'timestamp')
        ):
            stamped = dict(payload)
            stamped['timestamp'] = ts_ms
            return stamped
        return payload

    async def replay(self, realtime: bool = False) -> int:
        if not self._events:
            return 0

        t0 = self._events[0].received_at_ms
        loop = asyncio.get_running_loop()
        loop0 = loop.time() * 1000.0

        applied = 0
        for ev in self._events:
            if realtime:
                delta_ms = max(0, ev.received_at_ms - t0)
                now_ms = (loop.time() * 1000.0) - loop0
                sleep_ms = delta_ms - now_ms
                if sleep_ms > 0:
                    await asyncio.sleep(sleep_ms / 1000.0)
            applied += len(self.engine.process(ev))
        return applied
