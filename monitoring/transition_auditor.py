import json
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from strategy.execution_types import OrderNotification
from strategy.instrument_fsm import Transition


logger = logging.getLogger(__name__)


class TransitionAuditor:
    """Append-only JSONL log of state machine transitions and live order decisions."""

    def __init__(self, log_path: Optional[str]):
        self.log_path = Path(log_path or 'logs/transitions.jsonl')
        self.entries_written = 0

    def record_transition(self, transition: Transition):
        payload = {'event': 'transition', 'logged_at': time.time()}
        payload.update(transition.to_dict())
        self._write_entry(payload)

    def record_notification(self, notification: OrderNotification):
        payload = {'event': 'order', 'logged_at': time.time()}
        payload.update(notification.as_dict())
        self._write_entry(payload)

    def _write_entry(self, payload: Dict):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
            self.entries_written += 1
        except OSError as exc:
            logger.error("Failed to persist transition log: %s", exc)
