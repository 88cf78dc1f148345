"""Fixed-rate scheduling for the IK loop: deadline timer plus rolling period stats."""

import time
from typing import TYPE_CHECKING

import numpy as np
from numba import njit  # type: ignore[import-untyped]

from dlsik import config as cfg

if TYPE_CHECKING:
    from typing import Self

# About five seconds of samples at the default rate, as a power of two so the
# write index wraps with a bitmask
_WINDOW_SECONDS = 5.0


def _window_size(rate_hz: float) -> int:
    raw = max(2, int(rate_hz * _WINDOW_SECONDS))
    return 1 << (raw - 1).bit_length()


@njit(cache=True)
def _partition(arr: np.ndarray, lo: int, hi: int) -> int:
    pivot = arr[hi]
    store = lo - 1
    for j in range(lo, hi):
        if arr[j] <= pivot:
            store += 1
            arr[store], arr[j] = arr[j], arr[store]
    arr[store + 1], arr[hi] = arr[hi], arr[store + 1]
    return store + 1


@njit(cache=True)
def _select_kth(arr: np.ndarray, k: int) -> float:
    """k-th smallest element, reordering arr in place."""
    lo = 0
    hi = len(arr) - 1
    while lo < hi:
        idx = _partition(arr, lo, hi)
        if idx == k:
            return arr[k]
        if idx < k:
            lo = idx + 1
        else:
            hi = idx - 1
    return arr[k]


@njit(cache=True)
def _window_stats(
    samples: np.ndarray, scratch: np.ndarray, n: int
) -> tuple[float, float, float, float, float]:
    """Mean, std, min, max and p99 of the first n samples (Welford single pass)."""
    if n == 0:
        return 0.0, 0.0, 0.0, 0.0, 0.0

    mean = 0.0
    m2 = 0.0
    lo = samples[0]
    hi = samples[0]
    for i in range(n):
        x = samples[i]
        delta = x - mean
        mean += delta / (i + 1)
        m2 += delta * (x - mean)
        if x < lo:
            lo = x
        if x > hi:
            hi = x
    std = np.sqrt(m2 / n)

    if n >= 20:
        for i in range(n):
            scratch[i] = samples[i]
        p99 = _select_kth(scratch[:n], int(n * 0.99))
    else:
        p99 = hi
    return mean, std, lo, hi, p99


class RollingWindow:
    """Circular buffer of float samples with on-demand statistics."""

    __slots__ = ("_buf", "_scratch", "_mask", "_idx", "count")

    def __init__(self, size: int) -> None:
        self._buf = np.zeros(size, dtype=np.float64)
        self._scratch = np.zeros(size, dtype=np.float64)
        self._mask = size - 1
        self._idx = 0
        self.count = 0

    def push(self, value: float) -> None:
        self._buf[self._idx] = value
        self._idx = (self._idx + 1) & self._mask
        if self.count < len(self._buf):
            self.count += 1

    def stats(self) -> tuple[float, float, float, float, float]:
        return _window_stats(self._buf, self._scratch, self.count)


class LoopMetrics:
    """Rolling period and overshoot statistics of a fixed-rate loop."""

    __slots__ = (
        "loop_count",
        "overrun_count",
        "mean_period_s",
        "std_period_s",
        "min_period_s",
        "max_period_s",
        "p99_period_s",
        "mean_overshoot_s",
        "max_overshoot_s",
        "_periods",
        "_overshoots",
        "_target_period_s",
        "_last_log_time",
        "_last_warn_time",
        "_start_time",
        "_grace_period_s",
    )

    def __init__(self, target_period_s: float, grace_period_s: float = 5.0) -> None:
        """
        Args:
            target_period_s: Nominal loop period in seconds
            grace_period_s: Time after mark_started() during which degradation
                warnings are suppressed (numba compilation, first FK calls)
        """
        size = _window_size(1.0 / target_period_s if target_period_s > 0 else 1.0)
        self.loop_count = 0
        self.overrun_count = 0
        self.mean_period_s = 0.0
        self.std_period_s = 0.0
        self.min_period_s = 0.0
        self.max_period_s = 0.0
        self.p99_period_s = 0.0
        self.mean_overshoot_s = 0.0
        self.max_overshoot_s = 0.0
        self._periods = RollingWindow(size)
        self._overshoots = RollingWindow(size)
        self._target_period_s = target_period_s
        self._last_log_time = 0.0
        self._last_warn_time = 0.0
        self._start_time = 0.0
        self._grace_period_s = grace_period_s

    def mark_started(self, now: float) -> None:
        self._start_time = now

    def record_period(self, period: float) -> None:
        self._periods.push(period)

    def record_overshoot(self, overshoot: float) -> None:
        self._overshoots.push(overshoot)

    def compute_stats(self) -> None:
        if self._periods.count:
            (
                self.mean_period_s,
                self.std_period_s,
                self.min_period_s,
                self.max_period_s,
                self.p99_period_s,
            ) = self._periods.stats()
        if self._overshoots.count:
            mean, _std, _lo, hi, _p99 = self._overshoots.stats()
            self.mean_overshoot_s = mean
            self.max_overshoot_s = hi

    def should_log(self, now: float, interval: float) -> bool:
        """True at most once per ``interval`` seconds."""
        if now - self._last_log_time >= interval:
            self._last_log_time = now
            return True
        return False

    def check_degraded(
        self, now: float, threshold: float, rate_limit: float
    ) -> tuple[bool, float]:
        """Whether p99 exceeds the target period by more than ``threshold``.

        Returns (should_warn, degradation_pct). Rate limited and silent during
        the startup grace period.
        """
        if self._target_period_s <= 0 or self.p99_period_s <= 0:
            return False, 0.0
        if self._start_time > 0 and (now - self._start_time) < self._grace_period_s:
            return False, 0.0
        if now - self._last_warn_time < rate_limit:
            return False, 0.0
        if self.p99_period_s > self._target_period_s * (1.0 + threshold):
            self._last_warn_time = now
            return True, (self.p99_period_s / self._target_period_s - 1.0) * 100.0
        return False, 0.0


def format_hz_summary(m: LoopMetrics) -> str:
    """'XXX.XHz σ=X.XXms p99=X.XXms'"""
    if m.mean_period_s <= 0:
        return "0.0Hz σ=0.00ms p99=0.00ms"
    hz = 1.0 / m.mean_period_s
    return (
        f"{hz:.1f}Hz σ={m.std_period_s * 1000:.2f}ms p99={m.p99_period_s * 1000:.2f}ms"
    )


class PhaseTimer:
    """Per-phase durations inside one loop iteration.

    Usage:
        timer = PhaseTimer(["kinematics", "solve", "publish"])
        with timer.phase("solve"):
            ...
    """

    def __init__(self, phase_names: list[str], window: int = 1024):
        size = _window_size(window / _WINDOW_SECONDS)
        self._windows = {name: RollingWindow(size) for name in phase_names}
        self.last_s: dict[str, float] = {name: 0.0 for name in phase_names}

    def record(self, name: str, duration: float) -> None:
        self.last_s[name] = duration
        self._windows[name].push(duration)

    def phase(self, name: str) -> "PhaseContext":
        return PhaseContext(self, name)

    def summary(self) -> dict[str, dict[str, float]]:
        """{phase: {"mean_ms", "max_ms", "p99_ms"}}"""
        out = {}
        for name, win in self._windows.items():
            mean, _std, _lo, hi, p99 = win.stats()
            out[name] = {"mean_ms": mean * 1000, "max_ms": hi * 1000, "p99_ms": p99 * 1000}
        return out


class PhaseContext:
    __slots__ = ("_timer", "_name", "_t0")

    def __init__(self, timer: PhaseTimer, name: str):
        self._timer = timer
        self._name = name
        self._t0 = 0.0

    def __enter__(self) -> "Self":
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self._timer.record(self._name, time.perf_counter() - self._t0)


class LoopTimer:
    """Deadline scheduler: sleep most of the interval, spin the last part.

    Deadlines advance by a fixed interval, so work jitter does not accumulate
    into drift. After an overrun the deadline restarts from now instead of
    trying to catch up.
    """

    def __init__(
        self,
        interval_s: float,
        busy_threshold_s: float | None = None,
        stats_interval: int = 64,
    ):
        """
        Args:
            interval_s: Target loop interval in seconds
            busy_threshold_s: Time before the deadline to switch from sleep to
                spinning. Defaults to cfg.BUSY_THRESHOLD_MS.
            stats_interval: Recompute rolling stats every N ticks
        """
        if interval_s <= 0:
            raise ValueError(f"interval must be positive, got {interval_s}")
        self._interval = interval_s
        self._busy_threshold = (
            busy_threshold_s
            if busy_threshold_s is not None
            else cfg.BUSY_THRESHOLD_MS / 1000.0
        )
        self._stats_interval = stats_interval
        self._next_deadline = 0.0
        self._prev_t = 0.0
        self.metrics = LoopMetrics(interval_s)

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Reset the deadline to now. Call once before entering the loop."""
        now = time.perf_counter()
        self._next_deadline = now
        self._prev_t = now
        self.metrics.mark_started(now)

    def wait_for_next_tick(self) -> None:
        """Block until the next deadline and update metrics."""
        m = self.metrics
        m.loop_count += 1
        if m.loop_count % self._stats_interval == 0:
            m.compute_stats()

        self._next_deadline += self._interval
        remaining = self._next_deadline - time.perf_counter()

        if remaining > self._busy_threshold:
            time.sleep(remaining - self._busy_threshold)

        if remaining > 0:
            while time.perf_counter() < self._next_deadline:
                pass
            now = time.perf_counter()
            m.record_overshoot(now - self._next_deadline)
        else:
            m.overrun_count += 1
            now = time.perf_counter()
            self._next_deadline = now

        m.record_period(now - self._prev_t)
        self._prev_t = now
