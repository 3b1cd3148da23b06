import asyncio
import sys

sys.path.insert(0, '.')

import aiohttp

from api import order_notifier
from api.order_notifier import OrderNotifier
from strategy.execution_types import OrderAction, OrderNotification


class _FakeResponse:
    def __init__(self, status):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    posts = []
    status = 200
    error = None

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def post(self, url, json=None, headers=None, timeout=None):
        if _FakeSession.error is not None:
            raise _FakeSession.error
        _FakeSession.posts.append((url, json))
        return _FakeResponse(_FakeSession.status)


def _notification():
    return OrderNotification(OrderAction.ENTRY, 'BTCUSDT', 65000.5, 1_000, quantity=2, reason='threshold_crossed')


def _patch_session(monkeypatch, status=200, error=None):
    _FakeSession.posts = []
    _FakeSession.status = status
    _FakeSession.error = error
    monkeypatch.setattr(order_notifier.aiohttp, 'ClientSession', _FakeSession)


def test_placeholder_url_disables_notifier():
    assert OrderNotifier('${LIVE_SIGNAL_URL}').enabled is False
    assert OrderNotifier(None).enabled is False
    assert asyncio.run(OrderNotifier('').send(_notification())) is False


def test_send_posts_wire_payload(monkeypatch):
    _patch_session(monkeypatch)
    notifier = OrderNotifier('http://execution.local/live-signal', timeout_s=2)
    assert asyncio.run(notifier.send(_notification())) is True
    assert _FakeSession.posts == [
        ('http://execution.local/live-signal', {'kind': 'ENTRY', 'symbol': 'BTCUSDT', 'refPrice': 65000.5}),
    ]


def test_rejections_and_errors_are_swallowed(monkeypatch):
    notifier = OrderNotifier('http://execution.local/live-signal')
    _patch_session(monkeypatch, status=500)
    assert asyncio.run(notifier.send(_notification())) is False

    _patch_session(monkeypatch, error=aiohttp.ClientConnectionError('refused'))
    assert asyncio.run(notifier.send(_notification())) is False


def test_notify_schedules_fire_and_forget(monkeypatch):
    _patch_session(monkeypatch)
    notifier = OrderNotifier('http://execution.local/live-signal')

    async def _run():
        notifier.notify(_notification())
        await notifier.drain()

    asyncio.run(_run())
    assert len(_FakeSession.posts) == 1

    # Outside a running loop the notification is dropped, not raised
    notifier.notify(_notification())
