import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ingest.events import coerce_price, coerce_text


logger = logging.getLogger(__name__)

DEFAULT_FEED_SYMBOLS = ('BTCUSDT',)


class InstrumentDirectory:
    """Read-only token/symbol/lot lookup built once from instrument metadata.

    Metadata is a list of ``{"token", "zerodha", "tradingview", "lot"}``
    entries. ``zerodha`` is the primary symbol of a token and ``tradingview``
    an alias that signals may use instead.
    """

    def __init__(self, entries: Sequence[Dict[str, Any]] = (),
                 feed_symbols: Iterable[str] = DEFAULT_FEED_SYMBOLS):
        self._symbol_by_token: Dict[int, str] = {}
        self._order_by_token: Dict[int, int] = {}
        self._token_by_symbol: Dict[str, int] = {}
        self._symbols_by_token: Dict[int, List[str]] = {}
        self._lot_by_symbol: Dict[str, float] = {}
        self._feed_symbols = {str(s).upper() for s in feed_symbols if s}
        self._build(entries)

    @classmethod
    def from_file(cls, path: Optional[str], feed_symbols: Iterable[str] = DEFAULT_FEED_SYMBOLS) -> 'InstrumentDirectory':
        if not path or str(path).startswith('${'):
            logger.warning("No instrument metadata configured; directory is empty")
            return cls((), feed_symbols)
        metadata_path = Path(path)
        try:
            parsed = json.loads(metadata_path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            logger.warning("Instrument metadata %s not found; directory is empty", metadata_path)
            return cls((), feed_symbols)
        except (OSError, ValueError) as exc:
            logger.warning("Instrument metadata %s unreadable: %s", metadata_path, exc)
            return cls((), feed_symbols)
        if not isinstance(parsed, list):
            logger.warning("Instrument metadata %s is not a list; directory is empty", metadata_path)
            return cls((), feed_symbols)
        directory = cls(parsed, feed_symbols)
        logger.info(
            "Loaded %s instruments from %s (%s feed symbols)",
            len(directory._symbol_by_token),
            metadata_path,
            len(directory._feed_symbols),
        )
        return directory

    @classmethod
    def from_config(cls, instruments_cfg: Dict[str, Any]) -> 'InstrumentDirectory':
        feed_symbols = instruments_cfg.get('feed_symbols') or DEFAULT_FEED_SYMBOLS
        return cls.from_file(instruments_cfg.get('metadata_path'), feed_symbols)

    def _build(self, entries: Sequence[Dict[str, Any]]) -> None:
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                continue
            token = entry.get('token')
            if isinstance(token, bool) or not isinstance(token, int):
                token = None
            primary = coerce_text(entry.get('zerodha'))
            alias = coerce_text(entry.get('tradingview'))
            lot = coerce_price(entry.get('lot'))

            if token is not None and primary is not None:
                self._symbol_by_token.setdefault(token, primary)
                self._order_by_token.setdefault(token, index)
                self._link(token, primary)
            if token is not None and alias is not None:
                self._link(token, alias)
            if lot is not None:
                for symbol in (primary, alias):
                    if symbol is not None:
                        self._lot_by_symbol[symbol] = lot

    def _link(self, token: int, symbol: str) -> None:
        self._token_by_symbol[symbol] = token
        symbols = self._symbols_by_token.setdefault(token, [])
        if symbol not in symbols:
            symbols.append(symbol)

    def lookup_symbol(self, token: int) -> Optional[str]:
        return self._symbol_by_token.get(token)

    def lookup_token(self, symbol: str) -> Optional[int]:
        if not symbol:
            return None
        return self._token_by_symbol.get(symbol)

    def lot_size(self, symbol: Optional[str]) -> float:
        if not symbol:
            return 1.0
        return self._lot_by_symbol.get(symbol, 1.0)

    def order_index(self, token: int) -> Optional[int]:
        return self._order_by_token.get(token)

    def symbols_for_token(self, token: int) -> List[str]:
        return list(self._symbols_by_token.get(token, []))

    def is_feed_symbol(self, symbol: Optional[str]) -> bool:
        return bool(symbol) and symbol.upper() in self._feed_symbols

    def __len__(self) -> int:
        return len(self._symbol_by_token)
