import heapq
import itertools
from typing import Iterable, List, Tuple

from ingest.events import Event, ordering_key


class EventMerger:
    """Merge tick, signal and feed streams into one timestamp-ordered sequence.

    Events are held for ``reorder_window_ms`` so that a late arrival with an
    earlier timestamp can still be released ahead of newer events. Events
    sharing a timestamp are released signals first, then prices, then in
    arrival order.
    """

    def __init__(self, reorder_window_ms: int = 0):
        self.reorder_window_ms = max(int(reorder_window_ms), 0)
        self._heap: List[Tuple[Tuple[int, int, int], Event]] = []
        self._sequence = itertools.count()

    def push(self, event: Event) -> None:
        heapq.heappush(self._heap, (ordering_key(event, next(self._sequence)), event))

    def drain(self, now_ms: int) -> List[Event]:
        watermark = now_ms - self.reorder_window_ms
        released: List[Event] = []
        while self._heap and self._heap[0][0][0] <= watermark:
            released.append(heapq.heappop(self._heap)[1])
        return released

    def flush(self) -> List[Event]:
        released = [item[1] for item in sorted(self._heap, key=lambda item: item[0])]
        self._heap.clear()
        return released

    def __len__(self) -> int:
        return len(self._heap)


def merge_streams(*streams: Iterable[Event]) -> List[Event]:
    """Deterministically merge any number of event iterables for batch replay."""
    sequence = itertools.count()
    keyed = [
        (ordering_key(event, next(sequence)), event)
        for stream in streams
        for event in stream
    ]
    keyed.sort(key=lambda item: item[0])
    return [event for _, event in keyed]
