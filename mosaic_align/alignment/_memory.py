"""Process-wide registry of caches that can be dropped under memory pressure.

Bound methods are held weakly so that registering an object's cache does not
keep the object alive.
"""
import gc
import inspect
import logging
import threading
import weakref
from typing import Callable, Optional

import psutil

logger = logging.getLogger(__name__)

Releaser = Callable[[], None]

_lock = threading.Lock()
_releasers: list[Callable[[], Optional[Releaser]]] = []


def _reference(release: Releaser) -> Callable[[], Optional[Releaser]]:
    if inspect.ismethod(release):
        return weakref.WeakMethod(release)
    return lambda: release


def _live_releasers() -> list[Releaser]:
    """Dereference all registrations, dropping those whose owner is gone."""
    live = []
    alive_refs = []
    for ref in _releasers:
        release = ref()
        if release is not None:
            live.append(release)
            alive_refs.append(ref)
    _releasers[:] = alive_refs
    return live


def register_releasable(release: Releaser) -> None:
    """Register a callable that empties one reclaimable cache."""
    with _lock:
        _releasers.append(_reference(release))


def unregister_releasable(release: Releaser) -> None:
    with _lock:
        _releasers[:] = [ref for ref in _releasers if ref() != release]


def num_releasable() -> int:
    with _lock:
        return len(_live_releasers())


def release_all_caches() -> None:
    """Empty every registered cache and run the garbage collector."""
    with _lock:
        releasers = _live_releasers()
    for release in releasers:
        release()
    gc.collect()
    available_gb = psutil.virtual_memory().available / (1024 ** 3)
    logger.info(f"Released {len(releasers)} caches, {available_gb:.2f} GB available")
