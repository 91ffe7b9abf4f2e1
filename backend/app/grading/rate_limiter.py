import time
from typing import Dict

from fastapi import HTTPException


class RateLimiter:
    """Minimum interval between ad-hoc code runs of one student."""

    def __init__(self, interval_sec: float = 3.0, clock=time.monotonic):
        self.interval = interval_sec
        self.clock = clock
        self.last_run: Dict[str, float] = {}

    def check(self, student_id: str):
        now = self.clock()
        last = self.last_run.get(student_id)

        if last is not None and now - last < self.interval:
            remain = self.interval - (now - last)
            raise HTTPException(429, f"Running code too fast, wait {remain:.1f} sec")

        self.last_run[student_id] = now
