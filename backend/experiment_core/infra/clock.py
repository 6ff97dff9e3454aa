"""
Clock - wall time source shared by every component

Components never call time.time() directly so tests can drive time
explicitly (see tests/fakes.py ManualClock).
"""

import time


class SystemClock:
    """Wall clock backed by time.time()"""

    def now(self) -> float:
        """Current time in seconds"""
        return time.time()

    def now_ms(self) -> int:
        """Current time in integer milliseconds (stored timestamps use this)"""
        return int(self.now() * 1000)
