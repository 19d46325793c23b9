import contextlib
import logging
import time
from typing import Generator

import psutil

logger = logging.getLogger(__name__)


def resident_memory_mb() -> float:
    return psutil.Process().memory_info().rss / 1024**2


@contextlib.contextmanager
def debug_timing(stage: str) -> Generator[None, None, None]:
    """Log the wall time and resident memory growth of an alignment stage at debug level."""
    memory_before = resident_memory_mb()
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        grown = resident_memory_mb() - memory_before
        logger.debug(f"{stage}: {elapsed:0.3f}s, resident memory {grown:+.1f}MB")
