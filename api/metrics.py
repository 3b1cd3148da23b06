import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Any, Mapping, Optional

from config import config
from config.utils import get_config_section


logger = logging.getLogger(__name__)

_bound_port: Optional[int] = None


def _record_port(port_file: Optional[str], port: int) -> None:
    if not port_file:
        return
    path = Path(port_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(port))
    except OSError as exc:
        logger.warning("Could not write metrics port %s to %s: %s", port, path, exc)


class MetricsCollector:
    def __init__(self):
        self.events_processed = Counter('events_processed_total', 'Events applied to instrument state', ['stream'])
        self.dropped_events = Counter('dropped_events_total', 'Total dropped inbound events', ['reason'])
        self.fsm_transitions = Counter(
            'fsm_transitions_total',
            'Instrument state machine transitions',
            ['from_state', 'to_state']
        )

        self.paper_trades = Counter('paper_trades_total', 'Paper trades opened and closed', ['action'])
        self.paper_cumulative_pnl = Gauge('paper_cumulative_pnl', 'Realized paper PnL per instrument', ['instrument'])

        self.live_trades = Counter('live_trades_total', 'Mirrored live trades', ['action', 'reason'])
        self.live_position_open = Gauge('live_position_open', 'Live mirror position flag', ['instrument'])
        self.order_notifications = Counter('order_notifications_total', 'Order notifications emitted', ['action'])
        self.order_submission_failures = Counter(
            'order_submission_failures_total',
            'Order notifications the execution endpoint did not accept',
            ['reason']
        )

        self.latency_processing = Histogram('processing_latency_seconds', 'Internal processing latency')
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])

    def record_event(self, stream: str):
        self.events_processed.labels(stream=stream).inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def record_transition(self, from_state: str, to_state: str):
        self.fsm_transitions.labels(from_state=from_state, to_state=to_state).inc()

    def record_paper_trade(self, action: str):
        self.paper_trades.labels(action=action).inc()

    def update_paper_pnl(self, instrument: str, cumulative_pnl: float):
        self.paper_cumulative_pnl.labels(instrument=instrument).set(cumulative_pnl)

    def record_live_trade(self, action: str, reason: Optional[str]):
        self.live_trades.labels(action=action, reason=reason or 'unknown').inc()

    def update_live_position(self, instrument: str, is_open: bool):
        self.live_position_open.labels(instrument=instrument).set(1 if is_open else 0)

    def record_order_notification(self, action: str):
        self.order_notifications.labels(action=action).inc()

    def record_order_failure(self, reason: str):
        self.order_submission_failures.labels(reason=reason).inc()

    def record_processing_latency(self, latency_seconds: float):
        self.latency_processing.observe(latency_seconds)

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)


def start_metrics_server(monitoring_cfg: Optional[Mapping[str, Any]] = None) -> int:
    """Expose /metrics on the first free port from ``prometheus_port``.

    Up to ``prometheus_port_scan`` further ports are tried when the base port
    is taken. Calling again returns the port already bound.
    """
    global _bound_port
    if _bound_port is not None:
        return _bound_port
    if monitoring_cfg is None:
        monitoring_cfg = get_config_section(config, 'monitoring')
    base = int(monitoring_cfg.get('prometheus_port', 9090))
    scan = max(0, int(monitoring_cfg.get('prometheus_port_scan', 0) or 0))
    for candidate in range(base, base + scan + 1):
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s busy, trying %s", candidate, candidate + 1)
            continue
        _bound_port = candidate
        _record_port(monitoring_cfg.get('metrics_port_file'), candidate)
        logger.info("Prometheus metrics exposed on port %s", candidate)
        return candidate
    raise RuntimeError(f"No free metrics port in {base}-{base + scan}")


metrics = MetricsCollector()
