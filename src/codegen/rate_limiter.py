import math
import re
import threading
import time
from dataclasses import dataclass
from typing import Dict

from .types import RateLimitDecision

ANONYMOUS_IDENTITY = "anonymous"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d)\s*$")
_UNIT_SECONDS: dict[str, float] = {
  "ms": 0.001,
  "s": 1.0,
  "m": 60.0,
  "h": 3600.0,
  "d": 86400.0,
}


def parse_duration(value: str | int | float) -> float:
  if isinstance(value, bool):
    raise ValueError(f"invalid duration {value!r}")
  if isinstance(value, (int, float)):
    seconds = float(value)
  else:
    match = _DURATION_RE.match(value)
    if match is None:
      raise ValueError(
        f"invalid duration {value!r}; expected '<number><unit>' with unit ms, s, m, h or d"
      )
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
  if seconds <= 0:
    raise ValueError(f"duration must be positive, got {value!r}")
  return seconds


def identity_from_forwarded_for(header: str | None) -> str:
  if not header:
    return ANONYMOUS_IDENTITY
  first = header.split(",")[0].strip()
  return first or ANONYMOUS_IDENTITY


@dataclass
class _WindowCounter:
  window_start: float
  window_seconds: float
  count: int = 0

  @property
  def window_end(self) -> float:
    return self.window_start + self.window_seconds

  @property
  def reset_at(self) -> int:
    return math.ceil(self.window_end)


class FixedWindowRateLimiter:
  """Per-identity admission counter over epoch-aligned fixed windows.

  Only admitted checks are counted. The counter map is guarded by a lock that
  is never held across an await, so one process can serve concurrent requests
  from the same identity without over-admitting. Expired counters are swept
  only once the earliest tracked window has ended.
  """

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self._counters: Dict[tuple[str, float], _WindowCounter] = {}
    self._next_prune_at = math.inf

  def check(
    self,
    identity: str | None,
    max_requests: int,
    window: str | int | float,
  ) -> RateLimitDecision:
    window_seconds = parse_duration(window)
    limit = max(0, int(max_requests))
    key_identity = identity or ANONYMOUS_IDENTITY
    now = time.time()
    window_start = math.floor(now / window_seconds) * window_seconds
    with self._lock:
      if now >= self._next_prune_at:
        self._prune(now)
      key = (key_identity, window_seconds)
      counter = self._counters.get(key)
      if counter is None or counter.window_start != window_start:
        counter = _WindowCounter(window_start=window_start, window_seconds=window_seconds)
        self._counters[key] = counter
        self._next_prune_at = min(self._next_prune_at, counter.window_end)
      if counter.count < limit:
        counter.count += 1
        return RateLimitDecision(
          allowed=True,
          limit_amount=limit,
          remaining=max(0, limit - counter.count),
          reset_at=counter.reset_at,
        )
      return RateLimitDecision(
        allowed=False,
        limit_amount=limit,
        remaining=0,
        reset_at=counter.reset_at,
      )

  def _prune(self, now: float) -> None:
    next_prune_at = math.inf
    for key, counter in list(self._counters.items()):
      if counter.window_end <= now:
        del self._counters[key]
      else:
        next_prune_at = min(next_prune_at, counter.window_end)
    self._next_prune_at = next_prune_at

  def reset(self) -> None:
    with self._lock:
      self._counters.clear()
      self._next_prune_at = math.inf
