"""
Composition pipeline: 템플릿 선택 → 합성된 프로젝트.

흐름:
    ManifestStore.load_many
    → DependencyMerger.merge
    → (옵션) PeerDependencyAnalyzer.analyze
    → target root 검사
    → FileMaterializer.materialize
    → ConfigDocGenerator.generate
    → (옵션) InstallationOrchestrator.install

결과 상태:
- failed: 빈 선택, 쓰기 불가 target root, 로드 실패 템플릿 존재, 문서 생성 실패
- success_with_warnings: 병합 경고, peer fallback/충돌, 파일 충돌/에러,
  환경 변수 충돌, 취소, 설치 실패
- success: 그 외

예외는 잘못된 전략 이름(InvalidStrategy)만 호출자에게 전파.
"""

import asyncio
import logging
import tempfile
import threading
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from src.compose.install import InstallationOrchestrator, PackageInstaller
from src.core.logging import complete_report, create_report, emit_warning
from src.deps.merger import DependencyMerger
from src.deps.peers import PeerDependencyAnalyzer
from src.deps.versions import validate_strategy
from src.domain.constants import DEFAULT_MERGE_STRATEGY
from src.domain.errors import ComposeError, ErrorCodes, GenerationFailed
from src.domain.schemas import (
    ComposeOptions,
    CompositionReport,
    CompositionStatus,
    CopyPlan,
    CopyResolution,
    MergedDependencySet,
    PeerAnalysisReport,
    ProjectInfo,
    Selection,
    TemplateManifest,
)
from src.templates.docs import ConfigDocGenerator
from src.templates.manager import ManifestStore, summarize_manifests
from src.templates.materializer import FileMaterializer, validate_conflict_strategy

logger = logging.getLogger(__name__)


def check_target_writable(target_root: Path) -> None:
    """
    target root 생성 + 쓰기 probe.

    Raises:
        ComposeError: TARGET_NOT_WRITABLE
    """
    try:
        target_root.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=target_root, prefix=".compose-probe-"):
            pass
    except OSError as e:
        raise ComposeError(
            ErrorCodes.TARGET_NOT_WRITABLE,
            f"Target root is not writable: {target_root}: {e}",
            target_root=str(target_root),
        ) from e


class Composer:
    """
    합성 파이프라인.

    협력 객체를 주입하면 실행 간 공유 (매니페스트 캐시, peer 캐시).
    """

    def __init__(
        self,
        store: ManifestStore | None = None,
        merger: DependencyMerger | None = None,
        analyzer: PeerDependencyAnalyzer | None = None,
        materializer: FileMaterializer | None = None,
        doc_generator: ConfigDocGenerator | None = None,
    ):
        self.store = store or ManifestStore()
        self.merger = merger or DependencyMerger()
        self.analyzer = analyzer or PeerDependencyAnalyzer()
        self.materializer = materializer or FileMaterializer()
        self.doc_generator = doc_generator or ConfigDocGenerator()

    async def compose(
        self,
        selections: Iterable[Selection],
        target_root: Path,
        strategy: str = DEFAULT_MERGE_STRATEGY,
        variables: Mapping[str, str] | None = None,
        options: ComposeOptions | None = None,
        project_info: ProjectInfo | None = None,
        cancel: asyncio.Event | None = None,
        installer: PackageInstaller | None = None,
    ) -> CompositionReport:
        """
        템플릿 합성 1회 실행.

        Args:
            selections: 선택된 템플릿 (순서 유지)
            target_root: 출력 프로젝트 루트
            strategy: 의존성 병합 전략
            variables: {{ name }} 치환 변수
            options: ComposeOptions (peer 분석, 재시도, 충돌 전략 등)
            project_info: 문서 헤더 / package manifest용 정보
            cancel: 설정되면 남은 작업 중단
            installer: 설치 담당 (options.install일 때만 사용)

        Returns:
            CompositionReport

        Raises:
            InvalidStrategy: 알 수 없는 병합/충돌 전략
        """
        options = options or ComposeOptions()
        project_info = project_info or ProjectInfo()
        selections = list(selections)
        target_root = Path(target_root)
        variables = dict(variables or {})

        validate_strategy(strategy)
        validate_conflict_strategy(options.conflict_strategy)

        report = create_report(strategy, target_root, selections)
        logger.info(
            f"[{report.run_id}] Composing {len(selections)} templates into {target_root}"
        )

        if not selections:
            error = ComposeError(ErrorCodes.EMPTY_SELECTION, "No templates selected")
            logger.error(f"[{report.run_id}] {error}")
            return complete_report(report, CompositionStatus.FAILED, error)

        # === 1. Load ===
        started = time.perf_counter()
        loaded = self.store.load_many(selections)
        report.timings["load"] = time.perf_counter() - started
        report.loaded_templates = [m.template_id for m in loaded.manifests]
        report.load_errors = loaded.errors
        report.manifest_summary = summarize_manifests(loaded.manifests)
        for error in loaded.errors:
            logger.error(f"[{report.run_id}] Template load failed: {error}")
        manifests = loaded.manifests

        # === 2. Merge ===
        started = time.perf_counter()
        merged = self.merger.merge(manifests, strategy)
        report.timings["merge"] = time.perf_counter() - started
        report.merged = merged
        self._emit_merge_warnings(report, merged)

        # === 3. Peer analysis ===
        if options.enable_peer_analysis and not _cancelled(cancel):
            started = time.perf_counter()
            peer_report = await self.analyzer.analyze(merged, options, cancel)
            report.timings["peers"] = time.perf_counter() - started
            report.peer_report = peer_report
            self._emit_peer_warnings(report, peer_report)

        # === 4. Target root ===
        try:
            check_target_writable(target_root)
        except ComposeError as e:
            logger.error(f"[{report.run_id}] {e}")
            return self._finish(report, e)

        # === 5. Materialize ===
        if not _cancelled(cancel):
            started = time.perf_counter()
            plan = await self._materialize_off_loop(
                manifests, target_root, variables, options.conflict_strategy, cancel
            )
            report.timings["materialize"] = time.perf_counter() - started
            report.copy_plan = plan
            self._emit_copy_warnings(report, plan)

        # === 6. Docs ===
        if not _cancelled(cancel):
            started = time.perf_counter()
            try:
                report.docs = self.doc_generator.generate(
                    manifests, target_root, project_info
                )
            except GenerationFailed as e:
                logger.error(f"[{report.run_id}] {e}")
                return self._finish(report, e)
            report.timings["docs"] = time.perf_counter() - started
            for name in report.docs.env_conflicts:
                emit_warning(
                    report,
                    ErrorCodes.ENV_VAR_CONFLICT,
                    "docs",
                    name,
                    f"Environment variable {name} is declared differently by several templates",
                )

        # === 7. Install ===
        if options.install and installer is not None and not _cancelled(cancel):
            started = time.perf_counter()
            orchestrator = InstallationOrchestrator(
                installer,
                retries=options.install_retries,
                retry_delay=options.retry_delay,
                max_retry_delay=options.max_retry_delay,
            )
            report.install = await orchestrator.install(merged, target_root, project_info)
            report.timings["install"] = time.perf_counter() - started
            if not report.install.success:
                emit_warning(
                    report,
                    ErrorCodes.INSTALL_FAILED,
                    "install",
                    str(target_root),
                    f"Package installation failed ({report.install.error_type})",
                )

        if _cancelled(cancel):
            emit_warning(
                report,
                ErrorCodes.COMPOSE_CANCELLED,
                "compose",
                str(target_root),
                "Composition cancelled before completion",
            )

        return self._finish(report)

    async def _materialize_off_loop(
        self,
        manifests: list[TemplateManifest],
        target_root: Path,
        variables: Mapping[str, str],
        conflict_strategy: str,
        cancel: asyncio.Event | None,
    ) -> CopyPlan:
        """
        파일 복사는 worker 스레드에서 실행.

        이벤트 루프는 계속 돌아서 다른 task의 cancel.set()이 반영되고,
        threading.Event로 옮겨져 다음 파일 전에 확인된다.
        """
        stop = threading.Event()
        relay = asyncio.create_task(_relay_cancel(cancel, stop)) if cancel else None
        try:
            return await asyncio.to_thread(
                self.materializer.materialize,
                manifests,
                target_root,
                variables,
                conflict_strategy,
                stop,
            )
        finally:
            # compose 자체가 취소돼도 worker는 다음 파일 전에 멈춤
            stop.set()
            if relay is not None:
                relay.cancel()
                await asyncio.gather(relay, return_exceptions=True)

    # =========================================================================
    # Warnings
    # =========================================================================

    @staticmethod
    def _emit_merge_warnings(report: CompositionReport, merged: MergedDependencySet) -> None:
        for conflict in merged.conflicts:
            ranges = ", ".join(r.range for r in conflict.requested_by)
            if conflict.error_kind == "invalid_semver":
                code = ErrorCodes.INVALID_SEMVER
            elif conflict.is_unresolved:
                code = ErrorCodes.UNRESOLVED_CONFLICT
            elif conflict.severity.value != "low":
                code = ErrorCodes.DEPENDENCY_CONFLICT_RESOLVED
            else:
                continue
            emit_warning(
                report,
                code,
                "merge",
                f"{conflict.dependency_type}.{conflict.package}",
                conflict.error or f"Resolved {conflict.package} to {conflict.resolution}",
                original_value=ranges,
                resolved_value=conflict.resolution,
            )
        for warning in merged.warnings:
            if warning.startswith("Known incompatibility"):
                emit_warning(
                    report, ErrorCodes.KNOWN_INCOMPATIBILITY, "merge", "dependencies", warning
                )

    @staticmethod
    def _emit_peer_warnings(
        report: CompositionReport, peer_report: PeerAnalysisReport
    ) -> None:
        for record in peer_report.records:
            if record.is_fallback:
                emit_warning(
                    report,
                    ErrorCodes.PEER_FALLBACK_USED,
                    "peers",
                    record.package,
                    f"Peer information unavailable ({record.fallback_reason})",
                    original_value=record.requested_range,
                )
        for conflict in peer_report.conflicts:
            emit_warning(
                report,
                ErrorCodes.PEER_CONFLICT,
                "peers",
                f"{conflict.package}>{conflict.peer}",
                conflict.message,
                original_value=conflict.present_range,
                resolved_value=conflict.required_range,
            )

    @staticmethod
    def _emit_copy_warnings(report: CompositionReport, plan: CopyPlan) -> None:
        for entry in plan.collisions:
            emit_warning(
                report,
                ErrorCodes.FILE_COLLISION,
                "materialize",
                entry.dest_path,
                f"{entry.source_template} collides with {', '.join(entry.conflicts_with)} "
                f"({entry.resolution.value})",
                original_value=entry.conflicts_with[-1],
                resolved_value=(
                    entry.conflicts_with[-1]
                    if entry.resolution == CopyResolution.SKIPPED
                    else entry.source_template
                ),
            )
        for error in plan.errors:
            emit_warning(
                report,
                error.code,
                "materialize",
                error.dest_path or error.source_path,
                error.message,
            )

    # =========================================================================
    # Finish
    # =========================================================================

    @staticmethod
    def _finish(
        report: CompositionReport, fatal_error: ComposeError | None = None
    ) -> CompositionReport:
        report.counters = _counters(report)
        if fatal_error is not None or report.load_errors:
            complete_report(report, CompositionStatus.FAILED, fatal_error)
        else:
            complete_report(report)
        logger.info(
            f"[{report.run_id}] Composition finished: {report.status.value} "
            f"({len(report.warnings)} warnings)"
        )
        return report


def _cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


async def _relay_cancel(cancel: asyncio.Event, stop: threading.Event) -> None:
    await cancel.wait()
    stop.set()


def _counters(report: CompositionReport) -> dict[str, int]:
    counters = {
        "templates_selected": len(report.selections),
        "templates_loaded": len(report.loaded_templates),
        "load_errors": len(report.load_errors),
        "warnings": len(report.warnings),
    }
    if report.merged is not None:
        counters["dependencies"] = len(report.merged.dependencies)
        counters["dev_dependencies"] = len(report.merged.dev_dependencies)
        counters["conflicts"] = len(report.merged.conflicts)
        counters["unresolved_conflicts"] = len(report.merged.unresolved_conflicts)
    if report.peer_report is not None:
        counters["peer_fallbacks"] = report.peer_report.fallbacks_used
        counters["peer_conflicts"] = len(report.peer_report.conflicts)
    if report.copy_plan is not None:
        counters["files_written"] = sum(
            1 for e in report.copy_plan.entries if e.resolution != CopyResolution.SKIPPED
        )
        counters["file_collisions"] = len(report.copy_plan.collisions)
        counters["copy_errors"] = len(report.copy_plan.errors)
    if report.docs is not None:
        counters["env_vars"] = report.docs.variable_count
    return counters


async def compose(
    selections: Iterable[Selection | dict[str, Any]],
    target_root: Path,
    strategy: str = DEFAULT_MERGE_STRATEGY,
    variables: Mapping[str, str] | None = None,
    options: ComposeOptions | None = None,
    project_info: ProjectInfo | None = None,
    cancel: asyncio.Event | None = None,
    installer: PackageInstaller | None = None,
) -> CompositionReport:
    """
    기본 협력 객체로 합성 1회 실행.

    selections 항목은 Selection 또는 {template_root, sdk, template_name} dict.
    """
    normalized = [
        s if isinstance(s, Selection) else Selection.from_dict(s) for s in selections
    ]
    return await Composer().compose(
        normalized,
        target_root,
        strategy=strategy,
        variables=variables,
        options=options,
        project_info=project_info,
        cancel=cancel,
        installer=installer,
    )
