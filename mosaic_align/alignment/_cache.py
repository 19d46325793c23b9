"""Disk-backed cache for features and correspondences.

Entries live under ``<root>/<namespace>/<id path>`` where the id path spreads
entries over hashed subdirectories. Each entry stores a ``(fingerprint,
payload)`` pair. A read only hits when the stored fingerprint equals the
requested one; a missing file, a missing fingerprint, a different fingerprint
or any failure while reading counts as a miss.
"""
import hashlib
import logging
import os
import pickle
import tempfile
from pathlib import Path
from typing import Any, NamedTuple, Optional, Protocol

logger = logging.getLogger(__name__)

CACHE_EXTENSION = ".ser"


class CacheEntry(NamedTuple):
    fingerprint: Any
    payload: Any


class SerializationStore(Protocol):
    """Key-value store addressed by relative paths."""

    def serialize(self, obj: Any, path: str) -> bool:
        ...

    def deserialize(self, path: str) -> Optional[Any]:
        ...


def create_id_path(id: str, category: str, extension: str = CACHE_EXTENSION) -> str:
    """Relative path for an entry, two levels of hashed directories deep."""
    digest = hashlib.sha1(str(id).encode("utf-8")).hexdigest()
    return f"{digest[:2]}/{digest[2:4]}/{id}.{category}{extension}"


class PickleStore:
    """A :class:`SerializationStore` writing pickles below a root folder."""

    def __init__(self, root: os.PathLike | str):
        self.root = Path(root)

    def serialize(self, obj: Any, path: str) -> bool:
        target = self.root / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    pickle.dump(obj, f, protocol=pickle.HIGHEST_PROTOCOL)
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.remove(tmp_name)
                raise
        except (OSError, pickle.PicklingError, TypeError, AttributeError) as e:
            logger.warning(f"Could not serialize {target}: {e}")
            return False
        return True

    def deserialize(self, path: str) -> Optional[Any]:
        target = self.root / path
        if not target.exists():
            return None
        try:
            with open(target, "rb") as f:
                return pickle.load(f)
        except Exception as e:
            logger.warning(f"Could not deserialize {target}: {e}")
            return None


class FingerprintCache:
    """Namespace of a :class:`SerializationStore` validated by parameter fingerprints."""

    def __init__(self, store: SerializationStore, namespace: str):
        self.store = store
        self.namespace = namespace

    def path(self, id: str, category: str) -> str:
        return f"{self.namespace}/{create_id_path(id, category)}"

    def get(self, id: str, category: str, fingerprint: Any) -> Optional[Any]:
        """Return the cached payload, or None unless the fingerprints are equal."""
        path = self.path(id, category)
        try:
            entry = self.store.deserialize(path)
        except Exception as e:
            logger.warning(f"Cache read failed for {path}: {e}")
            return None
        if not isinstance(entry, CacheEntry):
            return None
        if entry.fingerprint is None or entry.fingerprint != fingerprint:
            logger.debug(f"Stale cache entry {path}, parameters changed")
            return None
        return entry.payload

    def put(self, id: str, category: str, fingerprint: Any, payload: Any) -> bool:
        path = self.path(id, category)
        try:
            ok = self.store.serialize(CacheEntry(fingerprint, payload), path)
        except Exception as e:
            logger.warning(f"Cache write failed for {path}: {e}")
            return False
        if not ok:
            logger.warning(f"Could not store cache entry {path}")
        return ok
