"""
Composition report logging: 리포트 생성, 경고 이벤트, 저장

규칙:
- 경고 필수 컨텍스트: level, code, action_id, field_or_slot,
                    original_value, resolved_value, message
- 리포트 파일: {logs_dir}/compose_{run_id}.json (원자적 쓰기)
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.core.ids import generate_run_id
from src.core.storage import atomic_write_json
from src.domain.errors import ComposeError
from src.domain.schemas import (
    CompositionReport,
    CompositionStatus,
    Selection,
    WarningLog,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Report Management
# =============================================================================


def create_report(
    strategy: str,
    target_root: Path | str,
    selections: list[Selection] | None = None,
) -> CompositionReport:
    """
    새 CompositionReport 생성.

    Args:
        strategy: 의존성 병합 전략
        target_root: 출력 디렉터리
        selections: 선택된 템플릿 목록

    Returns:
        초기화된 CompositionReport
    """
    return CompositionReport(
        run_id=generate_run_id(),
        started_at=datetime.now(UTC).isoformat(),
        strategy=strategy,
        target_root=str(target_root),
        selections=list(selections or []),
    )


def emit_warning(
    report: CompositionReport,
    code: str,
    action_id: str,
    field_or_slot: str,
    message: str,
    original_value: str | None = None,
    resolved_value: str | None = None,
) -> None:
    """
    경고 이벤트 기록.

    Args:
        report: CompositionReport 인스턴스
        code: 경고 코드 (ErrorCodes)
        action_id: 단계 ID (예: merge, peers, materialize)
        field_or_slot: 패키지 이름, 파일 경로, 환경 변수 이름 등
        message: 경고 메시지
        original_value: 원래 값
        resolved_value: 해결된 값
    """
    report.warnings.append(
        WarningLog(
            level="warning",
            code=code,
            action_id=action_id,
            field_or_slot=field_or_slot,
            original_value=original_value,
            resolved_value=resolved_value,
            message=message,
        )
    )
    logger.warning(f"[{code}] {action_id}/{field_or_slot}: {message}")


def complete_report(
    report: CompositionReport,
    status: CompositionStatus | None = None,
    fatal_error: ComposeError | dict[str, Any] | None = None,
) -> CompositionReport:
    """
    리포트 완료 처리.

    status를 생략하면 fatal_error / 경고 유무로 결정:
    fatal_error → FAILED, 경고 있음 → SUCCESS_WITH_WARNINGS, 그 외 SUCCESS

    Args:
        report: CompositionReport 인스턴스
        status: 명시적 최종 상태
        fatal_error: 합성을 중단시킨 에러
    """
    report.finished_at = datetime.now(UTC).isoformat()
    if isinstance(fatal_error, ComposeError):
        fatal_error = fatal_error.to_dict()
    if fatal_error is not None:
        report.fatal_error = fatal_error

    if status is None:
        if report.fatal_error is not None:
            status = CompositionStatus.FAILED
        elif report.warnings:
            status = CompositionStatus.SUCCESS_WITH_WARNINGS
        else:
            status = CompositionStatus.SUCCESS
    report.status = status
    return report


def save_report(report: CompositionReport, logs_dir: Path) -> Path:
    """
    리포트를 파일로 저장.

    Args:
        report: CompositionReport 인스턴스
        logs_dir: 로그 디렉터리 경로

    Returns:
        저장된 파일 경로
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"compose_{report.run_id}.json"
    atomic_write_json(log_path, report.to_dict())
    return log_path


def load_report(log_path: Path) -> dict[str, Any]:
    data: dict[str, Any] = json.loads(log_path.read_text(encoding="utf-8"))
    return data


def list_reports(logs_dir: Path) -> list[Path]:
    """
    로그 디렉터리의 모든 리포트 파일 목록 (최신순).
    """
    if not logs_dir.exists():
        return []

    reports = list(logs_dir.glob("compose_*.json"))
    reports.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return reports
