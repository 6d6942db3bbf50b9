"""
PeerDependencyAnalyzer: 병합된 의존성의 peer dependency 교차 검사.

조회 순서 (패키지별):
    이름 검증 → 메모리 캐시 → 디스크 offline 캐시 → 레지스트리 (재시도 루프)

상태 머신:
    PENDING → (CACHE_HIT | FETCHING) → (RESOLVED | FALLBACK)
    FETCHING은 재시도 한도까지 반복 후 FALLBACK

규칙:
- 실패는 절대 배치를 중단하지 않음 → fallback 레코드 (빈 peer 집합)
- 잘못된 이름은 네트워크 호출 전 거부, 네트워크 실패와 별도 집계
- offline 모드: 네트워크 없음, 모든 레코드 FALLBACK / source=cache
- 동시 조회는 semaphore로 제한, 결과는 병합 순서로 재정렬
- 취소 신호: 진행 중 조회 포기 → fallback(cancelled)
- peer 충돌은 항상 advisory (합성 차단 안 함)
"""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from src.deps.cache import PeerCache
from src.deps.registry import NpmRegistryClient, is_transient_error, is_valid_package_name
from src.deps.versions import intersect, is_subset, try_parse_range
from src.domain.constants import PEER_CACHE_FILENAME
from src.domain.errors import (
    ComposeError,
    ErrorCodes,
    MalformedPackageName,
    NetworkFailure,
    RegistryLookupFailed,
)
from src.domain.schemas import (
    ComposeOptions,
    LookupState,
    MergedDependencySet,
    PeerAnalysisReport,
    PeerConflict,
    PeerRecord,
    PeerSource,
    Severity,
)
from src.utils.retry import compute_backoff_delay

logger = logging.getLogger(__name__)

# fallback_reason 값
REASON_INVALID_NAME = "invalid_name"
REASON_NETWORK = "network_failure"
REASON_LOOKUP = "lookup_failed"
REASON_OFFLINE = "offline"
REASON_OFFLINE_MISS = "offline_cache_miss"
REASON_CANCELLED = "cancelled"

# 충돌 종류
MISSING_PEER = "missing_peer"
VERSION_MISMATCH = "version_mismatch"
VERSION_CHECK_FAILED = "version_check_failed"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _fallback(record: PeerRecord, reason: str) -> PeerRecord:
    record.state = LookupState.FALLBACK
    record.source = PeerSource.FALLBACK
    record.fallback_reason = reason
    record.peer_dependencies = {}
    record.optional_peers = []
    record.fetched_at = _now()
    return record


class PeerDependencyAnalyzer:
    """
    peer dependency 분석기.

    cache / client를 주입하면 실행 간 공유 (테스트에서는 mock transport).
    """

    def __init__(
        self,
        cache: PeerCache | None = None,
        client: NpmRegistryClient | None = None,
    ):
        self._cache = cache
        self._client = client
        # (디스크 경로, TTL) → 옵션 기반 캐시
        self._caches: dict[tuple[Path | None, float], PeerCache] = {}

    def cache_for(self, options: ComposeOptions) -> PeerCache:
        """
        주입된 캐시, 없으면 옵션의 (경로, TTL)별 캐시.

        같은 설정의 실행끼리만 메모리 캐시를 공유.
        """
        if self._cache is not None:
            return self._cache
        path: Path | None = None
        if options.offline_cache_enabled and options.offline_cache_path is not None:
            path = Path(options.offline_cache_path) / PEER_CACHE_FILENAME
        key = (path, options.cache_ttl_seconds)
        cache = self._caches.get(key)
        if cache is None:
            cache = PeerCache(path, ttl_seconds=options.cache_ttl_seconds)
            self._caches[key] = cache
        return cache

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()
        for cache in self._caches.values():
            cache.clear()
        self._caches.clear()

    # =========================================================================
    # Analyze
    # =========================================================================

    async def analyze(
        self,
        merged: MergedDependencySet,
        options: ComposeOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PeerAnalysisReport:
        """
        병합 의존성 전체 peer 검사.

        Args:
            merged: DependencyMerger 결과
            options: retries, timeout_ms, offline, 캐시 설정 등
            cancel: 설정되면 남은 조회를 fallback으로 전환

        Returns:
            PeerAnalysisReport (항상 반환, 예외 없음)
        """
        options = options or ComposeOptions()
        packages = merged.all_packages()
        cache = self.cache_for(options)
        report = PeerAnalysisReport(offline=options.offline)

        if options.offline:
            records = [
                self._offline_record(name, rng, cache, options)
                for name, rng in packages.items()
            ]
        else:
            records = await self._lookup_all(packages, options, cache, cancel, report)

        for record in records:
            self._count(record, report)
        report.records = records
        report.conflicts = detect_conflicts(records, packages)
        report.recommendations = build_recommendations(report)
        report.suggested_dependencies = suggest_dependencies(merged, report.conflicts)

        if not options.offline:
            cache.save()

        logger.info(
            f"Peer analysis: {report.processed} packages, {report.cache_hits} cache hits, "
            f"{report.fallbacks_used} fallbacks, {len(report.conflicts)} conflicts"
        )
        return report

    def _offline_record(
        self,
        name: str,
        rng: str,
        cache: PeerCache,
        options: ComposeOptions,
    ) -> PeerRecord:
        record = PeerRecord(package=name, requested_range=rng)
        cached = None
        if is_valid_package_name(name):
            cached = cache.get_memory(name, rng)
            if cached is None and options.offline_cache_enabled:
                cached = cache.get_disk(name, rng)
        if cached is None:
            _fallback(record, REASON_OFFLINE_MISS)
        else:
            record.resolved_version = cached.resolved_version
            record.peer_dependencies = dict(cached.peer_dependencies)
            record.optional_peers = list(cached.optional_peers)
            record.fetched_at = cached.fetched_at
            record.fallback_reason = REASON_OFFLINE
            record.state = LookupState.FALLBACK
        record.source = PeerSource.CACHE
        return record

    async def _lookup_all(
        self,
        packages: dict[str, str],
        options: ComposeOptions,
        cache: PeerCache,
        cancel: asyncio.Event | None,
        report: PeerAnalysisReport,
    ) -> list[PeerRecord]:
        semaphore = asyncio.Semaphore(max(1, options.max_concurrent_requests))
        client = self._client or NpmRegistryClient(options.registry, options.timeout_ms)
        records = [PeerRecord(package=n, requested_range=r) for n, r in packages.items()]

        try:
            tasks = [
                asyncio.create_task(
                    self._lookup(record, options, cache, client, semaphore, report)
                )
                for record in records
            ]
            pending: set[asyncio.Task[Any]] = set(tasks)
            cancel_task = asyncio.create_task(cancel.wait()) if cancel else None

            while pending:
                waiters = pending | ({cancel_task} if cancel_task else set())
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if cancel_task is not None and cancel_task in done:
                    break

            if pending:
                report.cancelled = True
                logger.warning(f"Peer analysis cancelled with {len(pending)} lookups in flight")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
                await asyncio.gather(cancel_task, return_exceptions=True)
        finally:
            if self._client is None:
                await client.aclose()

        for record in records:
            if record.state not in (LookupState.RESOLVED, LookupState.FALLBACK):
                _fallback(record, REASON_CANCELLED)
        return records

    async def _lookup(
        self,
        record: PeerRecord,
        options: ComposeOptions,
        cache: PeerCache,
        client: NpmRegistryClient,
        semaphore: asyncio.Semaphore,
        report: PeerAnalysisReport,
    ) -> None:
        name, rng = record.package, record.requested_range

        if not is_valid_package_name(name):
            error = MalformedPackageName(
                ErrorCodes.MALFORMED_PACKAGE_NAME,
                f"Invalid package name: {name!r}",
                package=name,
            )
            self._fail(record, REASON_INVALID_NAME, error, report)
            return

        cached = cache.get_memory(name, rng)
        if cached is None and options.offline_cache_enabled:
            cached = cache.get_disk(name, rng)
        if cached is not None:
            record.state = LookupState.CACHE_HIT
            record.resolved_version = cached.resolved_version
            record.peer_dependencies = dict(cached.peer_dependencies)
            record.optional_peers = list(cached.optional_peers)
            record.fetched_at = cached.fetched_at
            record.source = PeerSource.CACHE
            record.state = LookupState.RESOLVED
            return

        record.state = LookupState.FETCHING
        max_attempts = max(1, options.retries)
        last_error: ComposeError | None = None

        for attempt in range(1, max_attempts + 1):
            record.attempts = attempt
            try:
                async with semaphore:
                    peers = await asyncio.wait_for(
                        client.fetch_peers(name, rng), timeout=options.timeout_seconds
                    )
            except RegistryLookupFailed as e:
                self._fail(record, REASON_LOOKUP, e, report)
                return
            except (NetworkFailure, TimeoutError, httpx.HTTPError) as e:
                last_error = self._as_network_failure(name, e)
            except Exception as e:
                if not is_transient_error(e):
                    error = RegistryLookupFailed(
                        ErrorCodes.REGISTRY_LOOKUP_FAILED,
                        f"Registry lookup failed for {name}: {e}",
                        package=name,
                    )
                    self._fail(record, REASON_LOOKUP, error, report)
                    return
                last_error = self._as_network_failure(name, e)
            else:
                record.resolved_version = peers.version
                record.peer_dependencies = peers.peer_dependencies
                record.optional_peers = peers.optional_peers
                record.source = PeerSource.REGISTRY
                record.fetched_at = _now()
                record.state = LookupState.RESOLVED
                cache.put(record)
                return

            if attempt < max_attempts:
                delay = compute_backoff_delay(
                    attempt, options.retry_delay, options.max_retry_delay
                )
                logger.warning(
                    f"Registry lookup for {name} failed (attempt {attempt}/{max_attempts}): "
                    f"{last_error}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)

        error = last_error or NetworkFailure(
            ErrorCodes.NETWORK_FAILURE, f"Registry lookup failed for {name}", package=name
        )
        self._fail(record, REASON_NETWORK, error, report)

    @staticmethod
    def _as_network_failure(name: str, error: BaseException) -> NetworkFailure:
        if isinstance(error, NetworkFailure):
            return error
        if isinstance(error, TimeoutError):
            return NetworkFailure(
                ErrorCodes.NETWORK_FAILURE, f"Registry lookup timeout for {name}", package=name
            )
        return NetworkFailure(
            ErrorCodes.NETWORK_FAILURE, f"Network error for {name}: {error}", package=name
        )

    @staticmethod
    def _fail(
        record: PeerRecord,
        reason: str,
        error: ComposeError,
        report: PeerAnalysisReport,
    ) -> None:
        _fallback(record, reason)
        report.errors.append({"package": record.package, **error.to_dict()})
        logger.warning(f"Using fallback peer record for {record.package}: {error}")

    @staticmethod
    def _count(record: PeerRecord, report: PeerAnalysisReport) -> None:
        report.processed += 1
        if record.source == PeerSource.CACHE and record.fallback_reason != REASON_OFFLINE_MISS:
            report.cache_hits += 1
        elif record.source == PeerSource.REGISTRY:
            report.registry_hits += 1
        if record.state == LookupState.FALLBACK:
            report.fallbacks_used += 1
        reason = record.fallback_reason
        if reason == REASON_INVALID_NAME:
            report.malformed_packages += 1
        elif reason == REASON_NETWORK:
            report.network_failures += 1
        elif reason == REASON_LOOKUP:
            report.lookup_failures += 1


# =============================================================================
# Conflict Detection
# =============================================================================

def detect_conflicts(
    records: list[PeerRecord], packages: dict[str, str]
) -> list[PeerConflict]:
    """
    peer 선언 vs 병합 집합 비교.

    - 병합 집합에 없음 → missing_peer (high, optional이면 low)
    - range 교집합 없음 → version_mismatch (high)
    - 부분 겹침 (present ⊄ required) → version_mismatch (medium)
    - 파싱 불가 → version_check_failed (low)
    """
    conflicts: list[PeerConflict] = []
    for record in records:
        for peer, required in record.peer_dependencies.items():
            if peer == record.package:
                continue
            optional = peer in record.optional_peers
            present = packages.get(peer)

            if present is None:
                conflicts.append(
                    PeerConflict(
                        kind=MISSING_PEER,
                        package=record.package,
                        peer=peer,
                        required_range=required,
                        present_range=None,
                        severity=Severity.LOW if optional else Severity.HIGH,
                        optional=optional,
                        message=(
                            f"{record.package} expects {'optional ' if optional else ''}"
                            f"peer {peer}@{required}, which is not in the project"
                        ),
                    )
                )
                continue

            if try_parse_range(required) is None or try_parse_range(present) is None:
                conflicts.append(
                    PeerConflict(
                        kind=VERSION_CHECK_FAILED,
                        package=record.package,
                        peer=peer,
                        required_range=required,
                        present_range=present,
                        severity=Severity.LOW,
                        optional=optional,
                        message=f"Could not compare {peer} ranges {present} and {required}",
                    )
                )
                continue

            if is_subset(present, required):
                continue
            overlaps = bool(intersect(present, required))
            conflicts.append(
                PeerConflict(
                    kind=VERSION_MISMATCH,
                    package=record.package,
                    peer=peer,
                    required_range=required,
                    present_range=present,
                    severity=Severity.MEDIUM if overlaps else Severity.HIGH,
                    optional=optional,
                    message=(
                        f"{record.package} requires {peer}@{required}, "
                        f"project has {peer}@{present}"
                        + ("" if overlaps else " (no overlap)")
                    ),
                )
            )
    return conflicts


def build_recommendations(report: PeerAnalysisReport) -> list[str]:
    recommendations: list[str] = []
    for conflict in report.conflicts:
        if conflict.kind == MISSING_PEER and not conflict.optional:
            recommendations.append(
                f"Add missing peer dependency {conflict.peer}@{conflict.required_range} "
                f"(required by {conflict.package})"
            )
        elif conflict.kind == VERSION_MISMATCH and conflict.severity == Severity.HIGH:
            recommendations.append(
                f"Update {conflict.peer} to satisfy {conflict.required_range} "
                f"(required by {conflict.package}, currently {conflict.present_range})"
            )
    if report.high_severity_conflicts:
        recommendations.append(
            "If conflicts cannot be resolved, install with --legacy-peer-deps"
        )
    if report.fallbacks_used:
        recommendations.append(
            f"Peer information for {report.fallbacks_used} packages was unavailable; "
            "re-run with network access to verify"
        )
    return recommendations


def suggest_dependencies(
    merged: MergedDependencySet, conflicts: list[PeerConflict]
) -> dict[str, str]:
    """병합 dependencies + 누락된 필수 peer (처음 요구된 range)."""
    suggested = dict(merged.dependencies)
    for conflict in conflicts:
        if conflict.kind == MISSING_PEER and not conflict.optional:
            if conflict.peer not in merged.dev_dependencies:
                suggested.setdefault(conflict.peer, conflict.required_range)
    return suggested
