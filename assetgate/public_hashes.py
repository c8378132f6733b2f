"""Rotating per-photo public hashes.

Each public photo has at most one hash record. Anonymous callers must present
the current hash to fetch derivatives; admins get the hash back in response
headers so they can share it. Only ``ensure_hash`` (and the rotation sweep)
writes; validation is read-only so a public caller can never force a rotation.
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import os
import re
import secrets
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Iterator, Protocol

from assetgate.signing import now_ms

logger = logging.getLogger(__name__)

HASH_LENGTH = 40
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@dataclass(frozen=True, slots=True)
class PublicHashRecord:
    photo_id: int
    hash: str
    rotated_at: int
    expires_at: int


@dataclass(frozen=True, slots=True)
class HashCheck:
    ok: bool
    record: PublicHashRecord | None = None
    reason: str | None = None


class HashStore(Protocol):
    def get(self, photo_id: int) -> PublicHashRecord | None: ...

    def put(self, record: PublicHashRecord) -> None: ...

    def delete(self, photo_id: int) -> None: ...

    def list_expiring(self, before_ms: int) -> list[PublicHashRecord]: ...


class MemoryHashStore:
    def __init__(self):
        self._records: dict[int, PublicHashRecord] = {}
        self._lock = threading.Lock()

    def get(self, photo_id: int) -> PublicHashRecord | None:
        with self._lock:
            return self._records.get(photo_id)

    def put(self, record: PublicHashRecord) -> None:
        with self._lock:
            self._records[record.photo_id] = record

    def delete(self, photo_id: int) -> None:
        with self._lock:
            self._records.pop(photo_id, None)

    def list_expiring(self, before_ms: int) -> list[PublicHashRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.expires_at <= before_ms]


class JsonHashStore:
    """Hash records kept in one JSON file, rewritten atomically on change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("public hash store unreadable, starting empty: %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, dict]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    @staticmethod
    def _record(raw: dict) -> PublicHashRecord | None:
        try:
            return PublicHashRecord(
                photo_id=int(raw["photo_id"]),
                hash=str(raw["hash"]),
                rotated_at=int(raw["rotated_at"]),
                expires_at=int(raw["expires_at"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def get(self, photo_id: int) -> PublicHashRecord | None:
        with self._lock:
            raw = self._load().get(str(photo_id))
        return self._record(raw) if isinstance(raw, dict) else None

    def put(self, record: PublicHashRecord) -> None:
        with self._lock:
            data = self._load()
            data[str(record.photo_id)] = asdict(record)
            self._save(data)

    def delete(self, photo_id: int) -> None:
        with self._lock:
            data = self._load()
            if data.pop(str(photo_id), None) is not None:
                self._save(data)

    def list_expiring(self, before_ms: int) -> list[PublicHashRecord]:
        with self._lock:
            data = self._load()
        out = []
        for raw in data.values():
            rec = self._record(raw) if isinstance(raw, dict) else None
            if rec and rec.expires_at <= before_ms:
                out.append(rec)
        return out


def generate_hash() -> str:
    out = ""
    while len(out) < HASH_LENGTH:
        out += _NON_ALNUM.sub("", base64.b64encode(secrets.token_bytes(24)).decode("ascii"))
    return out[:HASH_LENGTH]


class PublicHashRegistry:
    def __init__(
        self,
        store: HashStore,
        ttl_ms: int,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.ttl_ms = ttl_ms
        self._clock = clock
        # photo_id -> [lock, holders]; entries go away once nobody holds them
        self._locks: dict[int, list] = {}
        self._locks_guard = threading.Lock()

    @contextlib.contextmanager
    def _photo_lock(self, photo_id: int) -> Iterator[None]:
        with self._locks_guard:
            slot = self._locks.get(photo_id)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[photo_id] = slot
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[photo_id]

    def _is_expired(self, record: PublicHashRecord | None, now: int) -> bool:
        return record is None or record.expires_at <= now

    def _rotate(self, photo_id: int, now: int, forced: bool) -> PublicHashRecord:
        record = PublicHashRecord(
            photo_id=photo_id,
            hash=generate_hash(),
            rotated_at=now,
            expires_at=now + self.ttl_ms,
        )
        self.store.put(record)
        logger.debug("public hash rotated: photo_id=%s forced=%s", photo_id, forced)
        return record

    def ensure_hash(self, photo_id: int, force: bool = False) -> PublicHashRecord:
        """Return the active record, creating or rotating it when needed.

        Concurrent callers for the same photo serialize on a per-photo lock,
        so exactly one of them generates the new hash and the others see it.
        """
        if photo_id is None:
            raise ValueError("ensure_hash requires photo_id")
        with self._photo_lock(photo_id):
            now = self._clock()
            existing = self.store.get(photo_id)
            if not force and not self._is_expired(existing, now):
                return existing
            return self._rotate(photo_id, now, forced=force)

    def get_active(self, photo_id: int) -> PublicHashRecord | None:
        if photo_id is None:
            return None
        record = self.store.get(photo_id)
        if self._is_expired(record, self._clock()):
            return None
        return record

    def validate(self, photo_id: int, candidate: str | None) -> HashCheck:
        if not candidate:
            return HashCheck(ok=False, reason="missing")
        record = self.store.get(photo_id)
        if record is None:
            return HashCheck(ok=False, reason="not_found")
        if record.hash != candidate:
            return HashCheck(ok=False, record=record, reason="mismatch")
        if self._is_expired(record, self._clock()):
            return HashCheck(ok=False, record=record, reason="expired")
        return HashCheck(ok=True, record=record)

    def invalidate(self, photo_id: int) -> None:
        if photo_id is None:
            return
        with self._photo_lock(photo_id):
            self.store.delete(photo_id)

    def rotate_due(self, now: int | None = None) -> int:
        """Rotate every record expired at ``now``.

        Each listed record is re-read under its photo lock; one that was
        rotated or invalidated after the listing is left alone.
        """
        cutoff = self._clock() if now is None else now
        rotated = 0
        for listed in self.store.list_expiring(cutoff):
            with self._photo_lock(listed.photo_id):
                current = self.store.get(listed.photo_id)
                if current is None or current.expires_at > cutoff:
                    continue
                self._rotate(listed.photo_id, self._clock(), forced=False)
            rotated += 1
        if rotated:
            logger.info("hashes rotated: count=%s", rotated)
        return rotated
