import math
from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class TelemetryStats:
    count: int
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "avg": self.avg, "count": self.count}


def compute_stats(values: Iterable) -> TelemetryStats:
    """
    min/max/avg/count over a window of readings.

    None and non-finite inputs are ignored, so an empty (or all-garbage)
    window yields count 0 with None for the rest rather than NaN.
    """
    count = 0
    total = 0.0
    lo = hi = None
    for raw in values:
        if raw is None or isinstance(raw, bool):
            continue
        try:
            v = float(raw)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(v):
            continue
        count += 1
        total += v
        lo = v if lo is None or v < lo else lo
        hi = v if hi is None or v > hi else hi
    if count == 0:
        return TelemetryStats(count=0)
    return TelemetryStats(count=count, min=lo, max=hi, avg=total / count)
