"""In-memory exchange for paper trading and integration tests.

Implements both IMarketData and IOrderExecutor. Prices follow a seeded
numpy random walk, positions use isolated margin, and protective stops are
kept as reduce-only conditional orders so a position closed by its stop
leaves orphans behind exactly like the real exchange does.
"""

import itertools
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import numpy as np

from core.config import settings
from core.errors import MarketDataError, OrderRejectedError
from core.instruments import INSTRUMENTS, get_instrument
from core.logging_utils import get_logger
from core.models import AccountSnapshot, AlgoOrder, Candle, Position, PositionSide
from core.trading_interfaces import OrderResult

logger = get_logger(__name__)

BASE_PRICES = {
    "BTC": 95000.0,
    "ETH": 3000.0,
    "BNB": 600.0,
    "SOL": 180.0,
    "XRP": 2.2,
    "OKB": 50.0,
}

TIMEFRAME_SECONDS = {"1m": 60, "3m": 180, "5m": 300, "15m": 900, "1H": 3600, "4H": 14400}

STOP_ORDER_TYPE = "stop"


@dataclass
class _PaperPosition:
    side: PositionSide
    contracts: float
    entry: float
    leverage: float
    margin: float
    opened_at: datetime
    stop_price: Optional[float] = None


class PaperExchange:
    """Simulated USDT-margined swap exchange."""

    def __init__(
        self,
        start_balance: float = None,
        seed: int = 7,
        volatility: float = 0.004,
        fee_rate: float = None,
        clock=None,
    ):
        self.balance = settings.paper_start_balance if start_balance is None else start_balance
        self.volatility = volatility
        self.fee_rate = settings.taker_fee_rate if fee_rate is None else fee_rate
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = np.random.default_rng(seed)
        self._prices = {spec.inst_id: BASE_PRICES[coin] for coin, spec in INSTRUMENTS.items()}
        self._candles: dict[tuple[str, str], list[Candle]] = {}
        self._positions: dict[str, _PaperPosition] = {}
        self._algos: dict[str, AlgoOrder] = {}
        self._leverage: dict[str, float] = {}
        self._ids = itertools.count(1)
        self.fail_next_fetch = False

    # Market data

    async def get_candles(self, instrument: str, timeframe: str, count: int) -> list[Candle]:
        self._check_fetch()
        key = (instrument, timeframe)
        series = self._candles.get(key)
        if series is None or len(series) < count or self._gap(series, timeframe) > len(series):
            series = self._generate(instrument, timeframe, count)
        price = self._price(instrument)
        self._roll_forward(series, timeframe, price)
        # the open candle tracks the live price
        live = series[-1]
        series[-1] = replace(live, close=price, high=max(live.high, price), low=min(live.low, price))
        self._candles[key] = series
        return list(series[-count:])

    async def get_ticker(self, instrument: str) -> float:
        self._check_fetch()
        return self._price(instrument)

    async def get_account(self) -> AccountSnapshot:
        self._check_fetch()
        positions = []
        locked = 0.0
        upnl_total = 0.0
        for inst, pos in self._positions.items():
            spec = get_instrument(inst)
            price = self._price(inst)
            qty = pos.contracts * spec.contract_value
            upnl = (price - pos.entry) * qty if pos.side is PositionSide.LONG else (pos.entry - price) * qty
            locked += pos.margin
            upnl_total += upnl
            positions.append(Position(
                instrument=inst,
                side=pos.side,
                contracts=pos.contracts,
                avg_entry_price=pos.entry,
                leverage=pos.leverage,
                margin=pos.margin,
                opened_at=pos.opened_at,
                unrealized_pnl=upnl,
                unrealized_pnl_ratio=upnl / pos.margin if pos.margin else 0.0,
                current_stop_price=pos.stop_price,
            ))
        return AccountSnapshot(
            total_equity=self.balance + locked + upnl_total,
            available_equity=self.balance,
            positions=positions,
        )

    async def get_pending_algo_orders(self, instrument: str) -> list[AlgoOrder]:
        self._check_fetch()
        return [o for o in self._algos.values() if o.instrument == instrument]

    # Execution

    async def set_leverage(self, instrument: str, leverage: float) -> None:
        self._leverage[instrument] = leverage

    async def place_order(
        self,
        instrument: str,
        side: PositionSide,
        contracts: float,
        reduce_only: bool,
        stop_price: Optional[float] = None,
    ) -> OrderResult:
        if contracts <= 0:
            raise OrderRejectedError(f"invalid size {contracts}", code="51000")
        price = self._price(instrument)
        if reduce_only:
            return self._reduce(instrument, side, contracts, price)
        result = self._open(instrument, side, contracts, price)
        if stop_price:
            await self.update_stop(instrument, side, contracts, stop_price)
        return result

    async def update_stop(self, instrument: str, side: PositionSide, size: float, stop_price: float) -> OrderResult:
        pos = self._positions.get(instrument)
        if pos is None or pos.side is not side:
            raise OrderRejectedError(f"no {side.value} position on {instrument}", code="51169")
        for order_id in [o.id for o in self._algos.values()
                         if o.instrument == instrument and o.type == STOP_ORDER_TYPE]:
            del self._algos[order_id]
        order_id = self._next_id("algo")
        self._algos[order_id] = AlgoOrder(order_id, instrument, STOP_ORDER_TYPE, reduce_only=True,
                                          trigger_price=stop_price, side=side, size=size)
        pos.stop_price = stop_price
        return OrderResult(success=True, order_id=order_id, contracts=size)

    async def cancel_orders(self, instrument: str, order_ids: list[str]) -> OrderResult:
        cancelled = [i for i in order_ids if self._algos.pop(i, None) is not None]
        return OrderResult(success=True, contracts=0.0, message=f"cancelled {len(cancelled)}",
                           extra={"cancelled": cancelled})

    async def place_algo_order(
        self,
        instrument: str,
        side: PositionSide,
        size: float,
        trigger_price: float,
        order_type: str = "conditional",
        callback_ratio: Optional[float] = None,
    ) -> OrderResult:
        order_id = self._next_id("algo")
        self._algos[order_id] = AlgoOrder(order_id, instrument, order_type, reduce_only=True,
                                          trigger_price=trigger_price, side=side, size=size)
        return OrderResult(success=True, order_id=order_id, contracts=size,
                           extra={"callback_ratio": callback_ratio})

    # Simulation controls

    def set_price(self, instrument: str, price: float) -> None:
        self._prices[instrument] = price
        self._trigger_stops(instrument)

    def add_algo_order(self, instrument: str, reduce_only: bool, order_type: str = "conditional") -> str:
        order_id = self._next_id("algo")
        self._algos[order_id] = AlgoOrder(order_id, instrument, order_type, reduce_only=reduce_only)
        return order_id

    def step(self) -> None:
        """Advance every price one random-walk step and fire stops."""
        for inst in list(self._prices):
            move = self._rng.normal(0.0, self.volatility)
            self._prices[inst] = self._prices[inst] * (1 + move)
            self._trigger_stops(inst)

    # Internals

    def _check_fetch(self) -> None:
        if self.fail_next_fetch:
            self.fail_next_fetch = False
            raise MarketDataError("paper exchange: simulated fetch failure")

    def _price(self, instrument: str) -> float:
        if instrument not in self._prices:
            raise MarketDataError(f"unknown instrument {instrument}")
        return self._prices[instrument]

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _open(self, instrument: str, side: PositionSide, contracts: float, price: float) -> OrderResult:
        spec = get_instrument(instrument)
        leverage = self._leverage.get(instrument, settings.leverage)
        notional = contracts * spec.contract_value * price
        margin = notional / leverage
        fee = notional * self.fee_rate
        if margin + fee > self.balance:
            raise OrderRejectedError(
                f"insufficient margin: need {margin + fee:.2f}, have {self.balance:.2f}", code="51008"
            )

        pos = self._positions.get(instrument)
        if pos is not None and pos.side is not side:
            raise OrderRejectedError(f"{pos.side.value} position already open on {instrument}", code="51010")

        self.balance -= margin + fee
        if pos is None:
            self._positions[instrument] = _PaperPosition(side, contracts, price, leverage, margin, self._clock())
        else:
            total = pos.contracts + contracts
            pos.entry = (pos.entry * pos.contracts + price * contracts) / total
            pos.contracts = total
            pos.margin += margin
        return OrderResult(success=True, order_id=self._next_id("ord"), contracts=contracts, fill_price=price)

    def _reduce(self, instrument: str, side: PositionSide, contracts: float, price: float) -> OrderResult:
        pos = self._positions.get(instrument)
        if pos is None or pos.side is not side:
            raise OrderRejectedError(f"no {side.value} position on {instrument}", code="51169")

        spec = get_instrument(instrument)
        size = min(contracts, pos.contracts)
        qty = size * spec.contract_value
        pnl = (price - pos.entry) * qty if side is PositionSide.LONG else (pos.entry - price) * qty
        fee = qty * price * self.fee_rate
        released = pos.margin * size / pos.contracts

        self.balance += released + pnl - fee
        pos.margin -= released
        pos.contracts = round(pos.contracts - size, 8)
        if pos.contracts <= 0:
            del self._positions[instrument]
        return OrderResult(success=True, order_id=self._next_id("ord"), contracts=size, fill_price=price,
                           extra={"realized_pnl": pnl - fee})

    def _trigger_stops(self, instrument: str) -> None:
        pos = self._positions.get(instrument)
        if pos is None or not pos.stop_price:
            return
        price = self._prices[instrument]
        hit = price <= pos.stop_price if pos.side is PositionSide.LONG else price >= pos.stop_price
        if not hit:
            return
        logger.info("[PAPER] %s stop hit at %.4f", instrument, price)
        self._reduce(instrument, pos.side, pos.contracts, price)
        # The filled stop leaves the exchange; any other reduce-only orders stay pending
        for order_id in [o.id for o in self._algos.values()
                         if o.instrument == instrument and o.type == STOP_ORDER_TYPE]:
            del self._algos[order_id]

    def _gap(self, series: list[Candle], timeframe: str) -> int:
        """Whole candle periods elapsed since the open candle started."""
        seconds = TIMEFRAME_SECONDS[timeframe]
        return int((self._clock() - series[-1].open_time).total_seconds() // seconds)

    def _roll_forward(self, series: list[Candle], timeframe: str, price: float) -> None:
        """Close the open candle once its period is over and open new ones.

        Candles opened during a gap between fetches carry the current price.
        The series keeps its length.
        """
        period = timedelta(seconds=TIMEFRAME_SECONDS[timeframe])
        size = len(series)
        now = self._clock()
        while now >= series[-1].open_time + period:
            live = series[-1]
            series[-1] = replace(live, closed=True)
            series.append(Candle(
                open_time=live.open_time + period,
                open=live.close,
                high=max(live.close, price),
                low=min(live.close, price),
                close=price,
                volume=float(self._rng.lognormal(mean=3.0, sigma=0.5)),
                closed=False,
            ))
        del series[:len(series) - size]

    def _generate(self, instrument: str, timeframe: str, count: int) -> list[Candle]:
        seconds = TIMEFRAME_SECONDS.get(timeframe)
        if seconds is None:
            raise MarketDataError(f"unsupported timeframe {timeframe}")
        last = self._price(instrument)
        scale = self.volatility * np.sqrt(seconds / 180)
        returns = self._rng.normal(0.0, scale, count)
        closes = np.cumprod(1 + returns)
        closes = closes / closes[-1] * last
        opens = np.concatenate(([closes[0] / (1 + returns[0])], closes[:-1]))
        wicks = np.abs(self._rng.normal(0.0, scale / 2, (2, count)))
        highs = np.maximum(opens, closes) * (1 + wicks[0])
        lows = np.minimum(opens, closes) * (1 - wicks[1])
        volumes = self._rng.lognormal(mean=3.0, sigma=0.5, size=count)

        now = self._clock()
        start = datetime.fromtimestamp(int(now.timestamp()) // seconds * seconds, tz=timezone.utc)
        candles = []
        for i in range(count):
            candles.append(Candle(
                open_time=start - timedelta(seconds=seconds * (count - 1 - i)),
                open=float(opens[i]),
                high=float(highs[i]),
                low=float(lows[i]),
                close=float(closes[i]),
                volume=float(volumes[i]),
                closed=i < count - 1,
            ))
        return candles
