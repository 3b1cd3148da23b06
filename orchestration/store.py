import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

from ingest.events import Event, InstrumentKey
from strategy.instrument_fsm import InstrumentFsm
from strategy.live_mirror import LiveMirrorEngine
from strategy.paper_ledger import PaperTradeLedger
from strategy.signal_classifier import SignalRow, SignalTracking


@dataclass
class InstrumentRecord:
    """Composite per-instrument state; every mutation happens under ``lock``."""

    key: InstrumentKey
    label: str
    lot: float
    ledger: PaperTradeLedger
    live: LiveMirrorEngine
    order_index: Optional[int] = None
    fsm: InstrumentFsm = field(default_factory=InstrumentFsm)
    tracking: SignalTracking = field(default_factory=SignalTracking)
    signal_rows: Deque[SignalRow] = field(default_factory=lambda: deque(maxlen=50))
    ltp: Optional[float] = None
    last_event_ms: Optional[int] = None
    applied_at_last_ms: Set[Tuple] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def kind(self) -> str:
        return 'token' if self.key.is_token else 'feed'

    def replay_verdict(self, event: Event) -> Optional[str]:
        """Return a drop reason for a stale or redelivered event, else None."""
        if self.last_event_ms is None:
            return None
        if event.received_at_ms < self.last_event_ms:
            return 'out_of_order'
        if event.received_at_ms == self.last_event_ms and event.fingerprint in self.applied_at_last_ms:
            return 'duplicate'
        return None

    def mark_applied(self, event: Event) -> None:
        if event.received_at_ms != self.last_event_ms:
            self.last_event_ms = event.received_at_ms
            self.applied_at_last_ms = set()
        self.applied_at_last_ms.add(event.fingerprint)


class InstrumentStore:
    """Process-lifetime arena of instrument records, created on first sight."""

    def __init__(self, factory: Callable[[InstrumentKey], InstrumentRecord]):
        self._factory = factory
        self._records: Dict[InstrumentKey, InstrumentRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: InstrumentKey) -> Optional[InstrumentRecord]:
        return self._records.get(key)

    def get_or_create(self, key: InstrumentKey) -> InstrumentRecord:
        record = self._records.get(key)
        if record is not None:
            return record
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = self._factory(key)
                self._records[key] = record
            return record

    def records(self) -> List[InstrumentRecord]:
        with self._lock:
            return list(self._records.values())

    def __iter__(self) -> Iterator[InstrumentRecord]:
        return iter(self.records())

    def __len__(self) -> int:
        return len(self._records)
