import argparse
import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

from api.metrics import metrics, start_metrics_server
from api.order_notifier import OrderNotifier
from api.view_builder import build_view
from config import config
from config.utils import get_config_section
from ingest.event_merger import EventMerger
from ingest.event_router import EventRouter
from ingest.events import Event, InstrumentKey, now_ms
from ingest.instrument_directory import InstrumentDirectory
from ingest.replay import ReplaySimulator
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.transition_auditor import TransitionAuditor
from orchestration.engine import DecisionEngine


logger = logging.getLogger(__name__)


class DecisionEngineService:
    """Ingest, order and apply events with one serial worker per instrument."""

    def __init__(self, config_obj=None, directory: Optional[InstrumentDirectory] = None,
                 notifier: Optional[OrderNotifier] = None, auditor: Optional[TransitionAuditor] = None):
        self.config = config_obj if config_obj is not None else config
        self.instruments_cfg = get_config_section(self.config, 'instruments')
        self.engine_cfg = get_config_section(self.config, 'engine')
        self.live_cfg = get_config_section(self.config, 'live')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.view_cfg = get_config_section(self.config, 'view')

        self.directory = directory if directory is not None else InstrumentDirectory.from_config(self.instruments_cfg)
        self.engine = DecisionEngine(self.directory, self.config)
        self.merger = EventMerger(self.engine_cfg.get('reorder_window_ms', 250))
        self.router = EventRouter()
        self.router.register_sink(self._accept)
        self.auditor = auditor or TransitionAuditor(self.monitoring_cfg.get('transition_log'))
        self.notifier = notifier or OrderNotifier.from_config(self.live_cfg)

        self.engine.add_transition_listener(self.auditor.record_transition)
        self.engine.add_notification_listener(self.auditor.record_notification)
        self.engine.add_notification_listener(self.notifier.notify)

        self.pump_interval_s = max(float(self.engine_cfg.get('pump_interval_ms', 100)), 1.0) / 1000.0
        self.queue_maxsize = int(self.engine_cfg.get('queue_maxsize', 10000))
        self.display_timezone = self.view_cfg.get('timezone', 'Asia/Kolkata')

        self._queues: Dict[InstrumentKey, asyncio.Queue] = {}
        self._workers: Dict[InstrumentKey, asyncio.Task] = {}
        self._pump_task: Optional[asyncio.Task] = None
        self._fatal: Optional[asyncio.Event] = None
        self.failure: Optional[BaseException] = None
        self.accepting = False
        self.running = False

    async def start(self):
        if self.running:
            return
        self._fatal = asyncio.Event()
        self.failure = None
        self.running = True
        self.accepting = True
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(
            "Decision engine started: %s instruments in directory, reorder window %sms",
            len(self.directory),
            self.merger.reorder_window_ms,
        )

    async def run(self, *companions: asyncio.Task):
        """Start, then block until a worker fails or any companion task (the API server) ends."""
        await self.start()
        start_metrics_server(self.monitoring_cfg)

        async def _wait_for_failure():
            await self._fatal.wait()

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup([asyncio.create_task(_wait_for_failure()), *companions], cleanup=_cleanup)
        if self.failure is not None:
            raise self.failure

    async def submit(self, stream: str, payload: Any) -> List[Event]:
        """Ingestion entry point for transports: decode and buffer for ordered release."""
        if not self.accepting:
            metrics.record_drop('not_accepting')
            logger.debug("Rejecting %s payload; service is not accepting events", stream)
            return []
        return await self.router.route(stream, payload)

    async def _accept(self, event: Event):
        self.merger.push(event)
        metrics.update_queue_depth('merger', len(self.merger))

    async def _pump(self):
        while self.running:
            await self._dispatch(self.merger.drain(now_ms()))
            metrics.update_queue_depth('merger', len(self.merger))
            await asyncio.sleep(self.pump_interval_s)

    async def _dispatch(self, events: List[Event]):
        for event in events:
            keys = self.engine.resolve_keys(event)
            if not keys:
                metrics.record_drop('unresolved')
                logger.debug("Dropping %s event with no instrument mapping", event.stream)
                continue
            for key in keys:
                await self._queue_for(key).put(event)

    def _queue_for(self, key: InstrumentKey) -> asyncio.Queue:
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_maxsize)
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(self._worker(key, queue))
        return queue

    async def _worker(self, key: InstrumentKey, queue: asyncio.Queue):
        while True:
            event = await queue.get()
            try:
                self.engine.apply(key, event)
            except Exception as exc:
                logger.exception("Worker for %s failed; stopping service", key)
                self.failure = exc
                self.accepting = False
                self._fatal.set()
                raise
            finally:
                queue.task_done()

    async def stop(self):
        if not self.running:
            return
        self.accepting = False
        self.running = False
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
            self._pump_task = None

        if self.failure is None:
            await self._dispatch(self.merger.flush())
            live_workers = [
                self._queues[key].join()
                for key, task in self._workers.items()
                if not task.done()
            ]
            if live_workers:
                await asyncio.gather(*live_workers)

        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        await self.notifier.drain()
        logger.info("Decision engine stopped")

    def view(self, at_ms: Optional[int] = None) -> Dict:
        return build_view(self.engine.published(), at_ms if at_ms is not None else now_ms(), self.display_timezone)


async def replay_file(path: str, realtime: bool = False) -> Dict:
    service = DecisionEngineService(config)
    simulator = ReplaySimulator(service.engine, service.router)
    simulator.load_from_jsonl(path)
    started = time.perf_counter()
    applied = await simulator.replay(realtime=realtime)
    await service.notifier.drain()
    events = simulator.events
    last_ms = events[-1].received_at_ms if events else now_ms()
    logger.info(
        "Replayed %s events (%s instrument updates) in %.3fs",
        len(events),
        applied,
        time.perf_counter() - started,
    )
    return service.view(last_ms)


async def main(args: Optional[argparse.Namespace] = None):
    args = args or parse_args()
    if args.replay:
        view = await replay_file(args.replay, realtime=args.realtime)
        print(json.dumps(view, indent=2, default=str))
        return

    import uvicorn
    from api import fastapi_server

    service = DecisionEngineService(config)
    fastapi_server.decision_service = service
    server = uvicorn.Server(uvicorn.Config(
        fastapi_server.app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info",
    ))
    try:
        await service.run(asyncio.create_task(server.serve()))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Decision engine shutting down on interrupt")
        await service.stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Per-instrument trading intent decision engine")
    parser.add_argument('--replay', metavar='EVENTS_JSONL', help="replay recorded stream payloads and print the view")
    parser.add_argument('--realtime', action='store_true', help="pace replay by recorded timestamps")
    return parser.parse_args(argv)


if __name__ == "__main__":
    cli_args = parse_args()
    setup_logging(config.monitoring.get('log_level', 'INFO'))
    asyncio.run(main(cli_args))
