"""Display-ready aggregation over published instrument snapshots.

Nothing here mutates engine state; every figure is derived from the
snapshots and the caller's clock.
"""
import math
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pytz

from orchestration.engine import InstrumentSnapshot

DEFAULT_TIMEZONE = 'Asia/Kolkata'

STATE_PRIORITY = {
    'IN_POSITION': 0,
    'AWAITING_ENTRY': 1,
    'BLOCKED': 2,
    'NO_SIGNAL': 3,
}


def format_ms(at_ms: Optional[int], tz_name: str = DEFAULT_TIMEZONE) -> Optional[str]:
    if at_ms is None:
        return None
    tz = pytz.timezone(tz_name)
    return datetime.fromtimestamp(at_ms / 1000.0, tz).isoformat(timespec='milliseconds')


def summarize(snapshot: InstrumentSnapshot, now_ms: int, tz_name: str = DEFAULT_TIMEZONE) -> Dict[str, Any]:
    fsm = snapshot.fsm
    in_position = fsm.state.value == 'IN_POSITION'
    live_status = snapshot.live_status(now_ms)
    blocked_seconds = None
    if live_status == 'blocked':
        blocked_seconds = max(0, math.ceil((snapshot.live_blocked_until_ms - now_ms) / 1000))
    return {
        'symbol': snapshot.symbol,
        'kind': snapshot.kind,
        'token': snapshot.token,
        'fsm_state': fsm.state.value,
        'ltp': snapshot.ltp,
        'threshold': fsm.threshold,
        'saved_entry_threshold': fsm.saved_entry_threshold,
        'last_buy_threshold': fsm.last_buy_threshold,
        'last_sell_threshold': fsm.last_sell_threshold,
        'last_signal_at': format_ms(fsm.last_signal_at_ms, tz_name),
        'last_checked_at': format_ms(fsm.last_checked_at_ms, tz_name),
        'last_blocked_at': format_ms(fsm.last_blocked_at_ms, tz_name),
        'paper_pnl': snapshot.paper_unrealized_pnl if in_position else 0.0,
        'cumulative_pnl': snapshot.paper_cumulative_pnl,
        'live_status': live_status,
        'blocked_seconds': blocked_seconds,
        'has_open_trade': snapshot.paper_open_trade is not None,
        'order_index': snapshot.order_index,
        'updated_at': format_ms(snapshot.updated_at_ms, tz_name),
    }


def _sort_key(summary: Dict[str, Any]):
    order_index = summary['order_index']
    return (
        STATE_PRIORITY.get(summary['fsm_state'], 99),
        0 if summary['kind'] == 'feed' else 1,
        order_index if order_index is not None else math.inf,
        summary['symbol'],
    )


def build_summaries(published: Mapping[str, InstrumentSnapshot], now_ms: int,
                    tz_name: str = DEFAULT_TIMEZONE) -> List[Dict[str, Any]]:
    summaries = [summarize(snapshot, now_ms, tz_name) for snapshot in published.values()]
    summaries.sort(key=_sort_key)
    return summaries


def build_totals(summaries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'paper_pnl': sum(s['paper_pnl'] for s in summaries),
        'cumulative_pnl': sum(s['cumulative_pnl'] for s in summaries),
        'active_live_count': sum(1 for s in summaries if s['live_status'] == 'active'),
        'open_trade_count': sum(1 for s in summaries if s['has_open_trade']),
        'instrument_count': len(summaries),
    }


def build_view(published: Mapping[str, InstrumentSnapshot], now_ms: int,
               tz_name: str = DEFAULT_TIMEZONE) -> Dict[str, Any]:
    summaries = build_summaries(published, now_ms, tz_name)
    return {
        'generated_at': format_ms(now_ms, tz_name),
        'instruments': summaries,
        'totals': build_totals(summaries),
    }


def build_detail(snapshot: InstrumentSnapshot, now_ms: int, tz_name: str = DEFAULT_TIMEZONE) -> Dict[str, Any]:
    detail = snapshot.to_dict()
    detail['summary'] = summarize(snapshot, now_ms, tz_name)
    return detail
