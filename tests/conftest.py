"""Shared fixtures: deterministic clock, scripted backends and price sources."""

import asyncio
from datetime import date, datetime, timezone
from typing import List, Optional

import pytest

from twap_mm.exceptions import ExecutionError
from twap_mm.execution.backends import PaperExecutionBackend
from twap_mm.models import ExecutionReport, MarketSnapshot, OrderDirection
from twap_mm.utils.config import ExecutionConfig, RiskConfig

START_MS = 1_700_000_000_000


class FakeClock:
    """Manual clock; ``sleep`` advances time instantly and yields to the loop."""

    def __init__(self, start_ms: int = START_MS):
        self.now = start_ms
        self.fixed_today: Optional[date] = None
        self.sleeps: List[float] = []

    def now_ms(self) -> int:
        return self.now

    def today(self) -> date:
        if self.fixed_today is not None:
            return self.fixed_today
        return datetime.fromtimestamp(self.now / 1000.0, tz=timezone.utc).date()

    def advance(self, ms: int) -> None:
        self.now += int(ms)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(round(max(seconds, 0.0) * 1000))
        await asyncio.sleep(0)


class ScriptedBackend(PaperExecutionBackend):
    """Paper fills, with optional failure on given calls and clock drift per call."""

    def __init__(self, clock=None, fail_on_calls=(), fee_rate: float = 0.0,
                 price_offset: float = 0.0, advance_ms: int = 0):
        super().__init__(fee_rate=fee_rate)
        self.clock = clock
        self.fail_on_calls = set(fail_on_calls)
        self.price_offset = price_offset
        self.advance_ms = advance_ms
        self.calls: List[tuple] = []

    async def execute_part(self, direction: OrderDirection, size: float, target_price: float) -> ExecutionReport:
        self.calls.append((direction, size, target_price))
        if self.clock is not None and self.advance_ms:
            self.clock.advance(self.advance_ms)
        if len(self.calls) in self.fail_on_calls:
            raise ExecutionError(f"venue rejected call {len(self.calls)}")
        return await super().execute_part(direction, size, target_price + self.price_offset)


class BlockingBackend:
    """Never completes a fill."""

    def __init__(self):
        self.calls = 0

    async def execute_part(self, direction, size, target_price):
        self.calls += 1
        await asyncio.Event().wait()


class FakeSource:
    """Price source returning a fixed price, None, or raising."""

    def __init__(self, name: str, clock: FakeClock, price: Optional[float] = 3400.0,
                 age_ms: int = 0, error: Optional[Exception] = None, **fields):
        self.name = name
        self.clock = clock
        self.price = price
        self.age_ms = age_ms
        self.error = error
        self.fields = fields
        self.calls = 0

    async def get_current_price(self) -> Optional[MarketSnapshot]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.price is None:
            return None
        return MarketSnapshot(
            mid_price=self.price,
            timestamp_ms=self.clock.now_ms() - self.age_ms,
            source=self.name,
            **self.fields,
        )


def make_snapshot(clock: FakeClock, mid_price: float = 3400.0, **overrides) -> MarketSnapshot:
    values = dict(
        mid_price=mid_price,
        timestamp_ms=clock.now_ms(),
        volatility=0.02,
        volume_24h=1_000.0,
        price_change_24h=0.01,
        bid_ask_spread=0.001,
        source="test",
    )
    values.update(overrides)
    return MarketSnapshot(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def risk_config():
    return RiskConfig()


@pytest.fixture
def execution_config():
    return ExecutionConfig(inter_part_delay_ms=1000)
