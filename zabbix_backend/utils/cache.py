# Copyright (c) 2025, Project Grafana Zabbix Backend. All rights reserved.

import hashlib
import json
import os
import threading
import time
import weakref
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..models import DatasourceInfo


class TTLCache:
    """Thread-safe key/value store whose entries expire after a TTL.

    Values are held as-is, so the cache can own live objects such as
    datasource instances. Expired entries are dropped by ``get`` and by a
    background janitor that runs every ``cleanup_interval`` seconds; each
    dropped entry is passed to ``on_evict`` (key, value) outside the lock.
    """

    def __init__(
        self,
        default_ttl: float = 60,
        cleanup_interval: float = 0,
        on_evict: Optional[Callable[[str, Any], None]] = None,
    ):
        self.default_ttl = default_ttl
        self.on_evict = on_evict
        self.cleanup_interval = cleanup_interval
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._janitor: Optional[_Janitor] = None
        if cleanup_interval and cleanup_interval > 0:
            self._janitor = _Janitor(self, cleanup_interval)
            self._janitor.start()

    def set(self, k: str, v: Any, ttl: Optional[float] = None) -> None:
        exp = time.monotonic() + (self.default_ttl if ttl is None else ttl)
        stored = self._encode(v)
        with self._lock:
            self._store[k] = (exp, stored)

    def get(self, k: str) -> Tuple[Any, bool]:
        with self._lock:
            item = self._store.get(k)
            if item is None:
                return None, False
            exp, stored = item
            expired = time.monotonic() >= exp
            if expired:
                self._store.pop(k, None)
        if expired:
            self._evicted(k, stored)
            return None, False
        return self._decode(stored)

    def delete(self, k: str) -> None:
        with self._lock:
            self._store.pop(k, None)

    def items(self) -> List[Tuple[str, Any]]:
        now = time.monotonic()
        with self._lock:
            live = [(k, v) for k, (exp, v) in self._store.items() if now < exp]
        out = []
        for k, stored in live:
            value, ok = self._decode(stored)
            if ok:
                out.append((k, value))
        return out

    def delete_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [(k, v) for k, (exp, v) in self._store.items() if now >= exp]
            for k, _ in expired:
                del self._store[k]
        for k, stored in expired:
            self._evicted(k, stored)
        return len(expired)

    def close(self) -> None:
        if self._janitor is not None:
            self._janitor.stop()
            self._janitor = None

    def __len__(self) -> int:
        now = time.monotonic()
        with self._lock:
            return sum(1 for exp, _ in self._store.values() if now < exp)

    def _evicted(self, k: str, stored: Any) -> None:
        if self.on_evict is None:
            return
        value, ok = self._decode(stored)
        if ok:
            self.on_evict(k, value)

    def _encode(self, v: Any) -> Any:
        return v

    def _decode(self, stored: Any) -> Tuple[Any, bool]:
        return stored, True


class EncryptedTTLCache(TTLCache):
    """TTL cache for JSON-serialisable values, sealed with AES-GCM at rest."""

    def __init__(
        self,
        default_ttl: float = 60,
        cleanup_interval: float = 0,
        encrypt_key: str = "",
    ):
        key = encrypt_key or os.getenv("APP_ENCRYPT_KEY", "")
        if key:
            self._key = _derive_key(key)
        else:
            self._key = AESGCM.generate_key(bit_length=128)
        self._aes = AESGCM(self._key)
        super().__init__(default_ttl=default_ttl, cleanup_interval=cleanup_interval)

    def _encode(self, v: Any) -> bytes:
        data = json.dumps(v, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        nonce = os.urandom(12)
        return nonce + self._aes.encrypt(nonce, data, None)

    def _decode(self, stored: bytes) -> Tuple[Any, bool]:
        nonce, payload = stored[:12], stored[12:]
        try:
            data = self._aes.decrypt(nonce, payload, None)
        except InvalidTag:
            return None, False
        return json.loads(data.decode("utf-8")), True


class _Janitor(threading.Thread):
    def __init__(self, cache: TTLCache, interval: float):
        super().__init__(name="ttl-cache-janitor", daemon=True)
        self._cache_ref = weakref.ref(cache)
        self._interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            cache = self._cache_ref()
            if cache is None:
                return
            cache.delete_expired()
            del cache

    def stop(self) -> None:
        self._stopped.set()


def _derive_key(secret: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=16,
        salt=None,
        info=b"zabbix-backend-query-cache",
    )
    return hkdf.derive(secret.encode("utf-8"))


def hash_string(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def hash_datasource_info(ds_info: DatasourceInfo) -> str:
    """Fingerprint of a full connection descriptor, used as datasource cache key."""
    payload = json.dumps(
        ds_info.model_dump(by_alias=True), sort_keys=True, separators=(",", ":")
    )
    return hash_string(payload)
