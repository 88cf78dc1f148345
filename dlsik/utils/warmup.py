"""
JIT warmup utilities.

Call warmup_jit() on startup so numba compiles before the control loop's
first deadline. With cache=True this is quick once the on-disk cache exists.
"""

import logging
import time

import numpy as np

from dlsik.server.controller import _clamp_integrate
from dlsik.server.loop_timer import _partition, _select_kth, _window_stats

logger = logging.getLogger(__name__)


def warmup_jit() -> float:
    """Compile every numba kernel with dummy data. Returns seconds taken."""
    logger.info("Warming JIT...")
    start = time.perf_counter()

    q = np.zeros(6, dtype=np.float64)
    dq = np.zeros(6, dtype=np.float64)
    _clamp_integrate(q, dq, 0.01)

    samples = np.linspace(0.0, 1.0, 32)
    scratch = np.zeros(32, dtype=np.float64)
    _window_stats(samples, scratch, 32)
    _select_kth(scratch.copy(), 3)
    _partition(scratch.copy(), 0, 31)

    elapsed = time.perf_counter() - start
    logger.info("JIT warmup done in %.2fs", elapsed)
    return elapsed
