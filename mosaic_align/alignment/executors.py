"""Bounded worker pools shared by pipeline stage.

Pools are requested by a stage identifier and a size parameter. An integer
size means "threads used by each task" and yields ``max(1, cpus // threads)``
workers; a float size is a fraction of the CPUs and yields
``max(1, floor(fraction * cpus))`` workers. Pools are memoized per
``(identifier, size parameter)`` so repeated requests share one pool and the
total concurrency of a stage stays bounded.

The registry holds the active provider and, separately, a local provider
whose pools always run in the calling process.
"""
import logging
import multiprocessing as mp
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from multiprocessing import cpu_count
from typing import Optional, Union

logger = logging.getLogger(__name__)

PoolSize = Union[int, float]


def pool_size(size: PoolSize, n_cpus: int) -> int:
    """Number of workers for a threads-per-task count or a CPU fraction."""
    if isinstance(size, bool):
        raise TypeError("Pool size must be an int or a float, not a bool")
    if isinstance(size, float):
        if size <= 0:
            raise ValueError(f"CPU fraction must be positive, got {size}")
        return max(1, int(size * n_cpus))
    if size < 1:
        raise ValueError(f"Threads per task must be at least 1, got {size}")
    return max(1, n_cpus // size)


def _size_key(size: PoolSize) -> tuple[str, PoolSize]:
    return ("fraction", size) if isinstance(size, float) else ("threads", size)


class ExecutorProvider(ABC):
    """Creates and memoizes executors for stage identifiers."""
    is_local = True

    def __init__(self, n_cpus: Optional[int] = None):
        self.n_cpus = n_cpus or cpu_count()
        self._pools: dict[str, dict[tuple[str, PoolSize], Executor]] = {}
        self._lock = threading.Lock()

    def get_service(self, identifier: str, size: PoolSize = 1) -> Executor:
        key = _size_key(size)
        with self._lock:
            pools = self._pools.setdefault(identifier, {})
            executor = pools.get(key)
            if executor is None:
                n_workers = pool_size(size, self.n_cpus)
                executor = self._create_executor(identifier, n_workers)
                pools[key] = executor
                logger.debug(f"Created pool '{identifier}' {key} with {n_workers} workers")
            return executor

    @abstractmethod
    def _create_executor(self, identifier: str, n_workers: int) -> Executor:
        ...

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pools = [e for by_size in self._pools.values() for e in by_size.values()]
            self._pools.clear()
        for executor in pools:
            executor.shutdown(wait=wait, cancel_futures=not wait)


class LocalExecutorProvider(ExecutorProvider):
    """Thread pools in the calling process."""

    def _create_executor(self, identifier: str, n_workers: int) -> Executor:
        return ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix=identifier)


class ProcessExecutorProvider(ExecutorProvider):
    """Process pools; tasks run on private copies of their arguments."""
    is_local = False

    def _create_executor(self, identifier: str, n_workers: int) -> Executor:
        # 'fork' can deadlock when worker threads hold locks at fork time
        return ProcessPoolExecutor(max_workers=n_workers, mp_context=mp.get_context("spawn"))


class ExecutorRegistry:
    """Active executor provider plus an always-available local provider."""

    def __init__(
        self,
        provider: Optional[ExecutorProvider] = None,
        local_provider: Optional[ExecutorProvider] = None,
    ):
        self._local = local_provider or LocalExecutorProvider()
        self._provider = self._local
        if provider is not None:
            self.set_provider(provider)

    @property
    def provider(self) -> ExecutorProvider:
        return self._provider

    @property
    def local_provider(self) -> ExecutorProvider:
        return self._local

    def set_provider(self, provider: ExecutorProvider) -> None:
        """Swap the active provider; a local provider also replaces the local one."""
        self._provider = provider
        if provider.is_local:
            self._local = provider

    def acquire(self, identifier: str, size: PoolSize = 1) -> Executor:
        return self._provider.get_service(identifier, size)

    def acquire_local(self, identifier: str, size: PoolSize = 1) -> Executor:
        return self._local.get_service(identifier, size)

    def shutdown(self, wait: bool = True) -> None:
        self._provider.shutdown(wait)
        if self._local is not self._provider:
            self._local.shutdown(wait)
