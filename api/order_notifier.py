import asyncio
import logging
from typing import Optional, Set

import aiohttp

from api.metrics import metrics
from strategy.execution_types import OrderNotification


logger = logging.getLogger(__name__)


class OrderNotifier:
    """Fire-and-forget POST of live entry/exit decisions to the execution endpoint.

    Submission results never feed back into the engine: failures are logged
    and counted, nothing else.
    """

    def __init__(self, webhook_url: Optional[str], timeout_s: float = 5.0):
        # Treat empty or unexpanded placeholder URLs as disabled
        if webhook_url and not str(webhook_url).startswith('${'):
            self.webhook_url = str(webhook_url)
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = float(timeout_s)
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, live_cfg) -> 'OrderNotifier':
        return cls(live_cfg.get('order_webhook'), live_cfg.get('order_timeout_s', 5))

    def notify(self, notification: OrderNotification) -> None:
        """Schedule a submission on the running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "[Order] No event loop for %s %s @ %s; notification not sent",
                notification.action.value,
                notification.symbol,
                notification.reference_price,
            )
            metrics.record_order_failure('no_loop')
            return
        task = loop.create_task(self.send(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, notification: OrderNotification) -> bool:
        if not self.enabled:
            logger.info(
                "[Order] %s %s @ %s (no endpoint configured)",
                notification.action.value,
                notification.symbol,
                notification.reference_price,
            )
            return False

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=notification.as_payload(),
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Order] %s %s rejected with status %s",
                            notification.action.value,
                            notification.symbol,
                            response.status,
                        )
                        metrics.record_order_failure(f"http_{response.status}")
                        return False
        except asyncio.TimeoutError:
            logger.error("[Order] %s %s timed out", notification.action.value, notification.symbol)
            metrics.record_order_failure('timeout')
            return False
        except aiohttp.ClientError as e:
            logger.error("[Order] Webhook error for %s: %s", notification.symbol, e)
            metrics.record_order_failure('client_error')
            return False
        logger.info(
            "[Order] %s %s @ %s submitted",
            notification.action.value,
            notification.symbol,
            notification.reference_price,
        )
        return True

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
