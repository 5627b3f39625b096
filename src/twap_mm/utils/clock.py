"""Wall clock in milliseconds with a cooperative sleep."""

import asyncio
import time
from datetime import date, datetime


class SystemClock:
    """Real time source; tests substitute a clock with the same three methods"""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def today(self) -> date:
        return datetime.fromtimestamp(self.now_ms() / 1000.0).date()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))
