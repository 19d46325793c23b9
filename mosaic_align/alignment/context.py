"""Per-run alignment context.

An :class:`AlignmentContext` carries everything an alignment run shares
across its tasks: the executor registry, the serialization store behind the
feature and correspondence caches, the progress signal and the point
identity cache. It is passed explicitly into each alignment call.
"""
import logging
import os
import zlib
from concurrent.futures import Future, as_completed
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Sequence

import numpy as np

from ._cache import FingerprintCache
from ._cache import PickleStore
from ._cache import SerializationStore
from ._point_cache import PointIdentityCache
from ._progress import AlignmentCancelledError
from ._progress import ProgressSignal
from .executors import ExecutorRegistry

logger = logging.getLogger(__name__)

FEATURES_NAMESPACE = "features.ser"
POINT_MATCHES_NAMESPACE = "pointmatches.ser"


@dataclass
class AlignmentContext:
    executors: ExecutorRegistry = field(default_factory=ExecutorRegistry)
    store: Optional[SerializationStore] = None
    progress: ProgressSignal = field(default_factory=ProgressSignal)
    point_cache: PointIdentityCache = field(default_factory=PointIdentityCache)
    seed: Optional[int] = None
    """Seed for the consensus searches; None draws fresh entropy for every run."""

    @classmethod
    def with_disk_cache(cls, folder: os.PathLike | str, **kwargs) -> "AlignmentContext":
        return cls(store=PickleStore(folder), **kwargs)

    def cache(self, namespace: str) -> Optional[FingerprintCache]:
        return None if self.store is None else FingerprintCache(self.store, namespace)

    def rng_for(self, key: str) -> np.random.Generator:
        """Random generator for one task, reproducible per key when seeded."""
        if self.seed is None:
            return np.random.default_rng()
        return np.random.default_rng([self.seed, zlib.crc32(key.encode("utf-8"))])


def iter_completed(
    futures: Sequence[Future], progress: ProgressSignal, phase: str, track: bool = True
) -> Iterator[Any]:
    """Yield task results in completion order, reporting progress.

    With ``track`` the progress signal is restarted for this phase; without
    it completions are added to the running count.

    The first failed task or an observed interruption cancels every
    remaining future of the phase and raises :class:`AlignmentCancelledError`.
    Pending futures are also cancelled when the consumer stops early, for
    example because its loop body raised.
    """
    futures = list(futures)
    if track:
        progress.start(len(futures), phase)
    exhausted = False
    try:
        for future in as_completed(futures):
            progress.check_cancelled()
            result = future.result()
            progress.advance()
            yield result
        exhausted = True
    except Exception as e:
        logger.error(f"{phase} failed or was interrupted: {e}")
        if isinstance(e, AlignmentCancelledError):
            raise
        raise AlignmentCancelledError(f"{phase} failed: {e}") from e
    finally:
        if not exhausted:
            for future in futures:
                future.cancel()
        if track:
            progress.finish()
