"""
PeerCache: peer dependency 정보 캐시 (메모리 + 디스크 offline 캐시).

규칙:
- 키: package@range_signature
- TTL은 읽을 때 lazy 검사 (백그라운드 eviction 없음)
- 디스크 저장은 append-only: 아직 유효한 기존 엔트리는 덮어쓰지 않음
- 저장: FileLock 아래 디스크 내용과 병합 → temp + 원자적 rename
- 락 timeout 시 경고 후 저장 생략 (캐시는 최적화일 뿐)
- clear(): 메모리 + 디스크 상태 모두 제거

디스크 포맷:
    {"version": 1, "entries": {"react-dom@^18.2.0": {"stored_at": 1700000000.0,
                                                   "record": {...}}}}
"""

import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from src.core.storage import atomic_write_json, load_json
from src.deps.versions import range_signature
from src.domain.constants import (
    DEFAULT_CACHE_TTL_SECONDS,
    PEER_CACHE_FILENAME,
    PEER_CACHE_LOCK_TIMEOUT,
)
from src.domain.schemas import PeerRecord

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


def cache_key(package: str, version_range: str) -> str:
    return f"{package}@{range_signature(version_range)}"


class PeerCache:
    """
    peer 정보 캐시.

    여러 compose 실행이 같은 인스턴스/파일을 읽기 공유 가능.
    """

    def __init__(
        self,
        path: Path | None = None,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        lock_timeout: float = PEER_CACHE_LOCK_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            path: 디스크 캐시 파일 (None이면 메모리 전용)
            ttl_seconds: 엔트리 유효 기간
            lock_timeout: 저장 시 FileLock 대기 시간(초)
            clock: 현재 시각 (epoch seconds)
        """
        self.path = path
        self.ttl_seconds = ttl_seconds
        self.lock_timeout = lock_timeout
        self._clock = clock
        self._memory: dict[str, tuple[float, PeerRecord]] = {}
        self._disk: dict[str, dict[str, Any]] | None = None
        self._pending: dict[str, dict[str, Any]] = {}

    @classmethod
    def in_directory(
        cls, directory: Path, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    ) -> "PeerCache":
        return cls(Path(directory) / PEER_CACHE_FILENAME, ttl_seconds=ttl_seconds)

    @property
    def lock_path(self) -> Path | None:
        return self.path.with_name(self.path.name + ".lock") if self.path else None

    def _is_fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self.ttl_seconds

    # =========================================================================
    # Read
    # =========================================================================

    def get_memory(self, package: str, version_range: str) -> PeerRecord | None:
        """메모리 캐시 조회 (만료 시 제거 후 None)."""
        key = cache_key(package, version_range)
        entry = self._memory.get(key)
        if entry is None:
            return None
        stored_at, record = entry
        if not self._is_fresh(stored_at):
            del self._memory[key]
            return None
        return record

    def get_disk(self, package: str, version_range: str) -> PeerRecord | None:
        """
        디스크 캐시 조회.

        hit이면 메모리에도 올림. 손상된 엔트리는 무시.
        """
        if self.path is None:
            return None
        key = cache_key(package, version_range)
        entry = self._load_disk().get(key)
        if not isinstance(entry, dict):
            if entry is not None:
                logger.warning(f"Ignoring corrupt peer cache entry {key}: not an object")
            return None
        stored_at = entry.get("stored_at", 0.0)
        if not isinstance(stored_at, (int, float)) or not self._is_fresh(stored_at):
            return None
        try:
            record = PeerRecord.from_dict(entry["record"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring corrupt peer cache entry {key}: {e}")
            return None
        self._memory[key] = (stored_at, record)
        return record

    def _load_disk(self) -> dict[str, dict[str, Any]]:
        if self._disk is None:
            self._disk = self._read_entries()
        return self._disk

    def _read_entries(self) -> dict[str, dict[str, Any]]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = load_json(self.path)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Peer cache unreadable, ignoring {self.path}: {e}")
            return {}
        entries = data.get("entries", {}) if isinstance(data, dict) else {}
        return entries if isinstance(entries, dict) else {}

    # =========================================================================
    # Write
    # =========================================================================

    def put(self, record: PeerRecord) -> None:
        """
        조회 결과 기록 (메모리 즉시, 디스크는 save() 시).

        아직 유효한 엔트리가 있으면 교체하지 않음.
        """
        key = cache_key(record.package, record.requested_range)
        existing = self._memory.get(key)
        if existing is not None and self._is_fresh(existing[0]):
            return
        now = self._clock()
        self._memory[key] = (now, record)
        self._pending[key] = {"stored_at": now, "record": record.to_dict()}

    def save(self) -> bool:
        """
        pending 엔트리를 디스크에 병합 저장.

        Returns:
            저장 여부 (메모리 전용 / 변경 없음 / 락 timeout이면 False)
        """
        if self.path is None or not self._pending:
            return False

        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_path), timeout=self.lock_timeout)
        try:
            with lock:
                entries = self._read_entries()
                added = 0
                for key, entry in self._pending.items():
                    current = entries.get(key)
                    if (
                        isinstance(current, dict)
                        and isinstance(current.get("stored_at"), (int, float))
                        and self._is_fresh(current["stored_at"])
                    ):
                        continue
                    entries[key] = entry
                    added += 1
                atomic_write_json(
                    self.path, {"version": CACHE_FORMAT_VERSION, "entries": entries}
                )
        except Timeout:
            logger.warning(
                f"Peer cache lock timeout after {self.lock_timeout}s, skipping save: "
                f"{self.path}"
            )
            return False

        self._disk = entries
        self._pending.clear()
        logger.debug(f"Peer cache saved: {added} new entries → {self.path}")
        return True

    # =========================================================================
    # Maintenance
    # =========================================================================

    def clear(self) -> None:
        """메모리 + 디스크 캐시 제거."""
        self._memory.clear()
        self._pending.clear()
        self._disk = {}
        if self.path is not None and self.path.exists():
            self.path.unlink()
            logger.info(f"Peer cache cleared: {self.path}")

    def purge_expired(self, dry_run: bool = False) -> int:
        """
        만료 엔트리를 디스크에서 제거.

        Args:
            dry_run: True면 개수만 계산

        Returns:
            만료(제거) 엔트리 수
        """
        if self.path is None or not self.path.exists():
            return 0
        lock = FileLock(str(self.lock_path), timeout=self.lock_timeout)
        with lock:
            entries = self._read_entries()
            fresh = {
                key: entry
                for key, entry in entries.items()
                if isinstance(entry, dict)
                and isinstance(entry.get("stored_at"), (int, float))
                and self._is_fresh(entry["stored_at"])
            }
            expired = len(entries) - len(fresh)
            if expired and not dry_run:
                atomic_write_json(
                    self.path, {"version": CACHE_FORMAT_VERSION, "entries": fresh}
                )
                self._disk = fresh
        return expired

    def __len__(self) -> int:
        return len(self._memory)
