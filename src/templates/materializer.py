"""
FileMaterializer: 템플릿 파일 → target 프로젝트 트리.

규칙:
- source는 각 매니페스트 자신의 template root 기준 (공유 root 아님)
- 텍스트 판별: probe window 안 NUL 바이트 없음 + UTF-8 디코딩 성공
- 텍스트만 {{name}} 치환, 바이너리는 byte-for-byte 복사
- 모르는 placeholder는 그대로 둠 (에러 아님)
- destination 경로도 같은 문법으로 치환
- 같은 실행 안의 충돌만 충돌로 기록 (overwrite / skip / merge)
- merge: 나중 파일 채택 + 메타데이터만 기록 (내용 병합 없음)
- 권한(실행 비트) 보존, temp → rename 쓰기 (부분 파일 없음)
- 파일 단위 실패는 plan.errors에 기록, 배치 계속
- 취소는 파일 사이에서만 확인 (쓰던 파일은 끝까지 씀)
- 충돌 기록용 claim은 쓰기 성공 또는 skip 기록 후에만
"""

import asyncio
import threading
import logging
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

from src.core.storage import atomic_write_bytes
from src.domain.constants import (
    BINARY_PROBE_BYTES,
    CONFLICT_STRATEGIES,
    DEFAULT_CONFLICT_STRATEGY,
)
from src.domain.errors import ErrorCodes, InvalidStrategy
from src.domain.schemas import (
    CopyError,
    CopyPlan,
    CopyPlanEntry,
    CopyResolution,
    TemplateManifest,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Variable Substitution
# =============================================================================

# {{name}}, {{ name }} (이름 앞뒤 공백 허용)
PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")


def detect_placeholders(text: str) -> list[str]:
    """
    텍스트에서 placeholder 이름 감지.

    Args:
        text: 검색할 텍스트

    Returns:
        placeholder 이름 목록 (공백 제거, 등장 순서)
    """
    return [m.strip() for m in PLACEHOLDER_PATTERN.findall(text)]


def has_placeholders(text: str) -> bool:
    return bool(PLACEHOLDER_PATTERN.search(text))


def substitute_variables(text: str, variables: Mapping[str, str]) -> str:
    """
    {{name}} 치환 (순수 함수, 예외 없음).

    모르는 이름은 원문 그대로 남김.

    Args:
        text: 원본 텍스트
        variables: 이름 → 값

    Returns:
        치환된 텍스트
    """
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def is_binary(data: bytes, probe_bytes: int = BINARY_PROBE_BYTES) -> bool:
    """probe window 안에 NUL 바이트가 있으면 바이너리."""
    return b"\x00" in data[:probe_bytes]


def decode_text(data: bytes) -> str | None:
    """텍스트로 취급 가능하면 str, 아니면 None."""
    if is_binary(data):
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


# =============================================================================
# Materializer
# =============================================================================

def validate_conflict_strategy(strategy: str) -> None:
    if strategy not in CONFLICT_STRATEGIES:
        raise InvalidStrategy(
            ErrorCodes.INVALID_STRATEGY,
            f"Invalid conflict strategy: {strategy}. "
            f"Valid strategies: {', '.join(CONFLICT_STRATEGIES)}",
            strategy=strategy,
        )


class FileMaterializer:
    """
    템플릿 파일 복사기.

    Usage:
        plan = FileMaterializer().materialize(
            manifests, target_root, {"projectName": "demo"}, "skip"
        )
    """

    def materialize(
        self,
        manifests: Sequence[TemplateManifest],
        target_root: Path,
        variables: Mapping[str, str] | None = None,
        conflict_strategy: str = DEFAULT_CONFLICT_STRATEGY,
        cancel: asyncio.Event | threading.Event | None = None,
    ) -> CopyPlan:
        """
        매니페스트 files 매핑을 target_root에 복사.

        Args:
            manifests: 선택 순서대로의 매니페스트
            target_root: 대상 프로젝트 루트
            variables: 치환 변수
            conflict_strategy: overwrite | skip | merge
            cancel: 설정되면 다음 파일 전에 중단
                (worker 스레드에서 돌릴 때는 threading.Event)

        Returns:
            CopyPlan (entries + per-file errors)

        Raises:
            InvalidStrategy: 알 수 없는 conflict_strategy
        """
        validate_conflict_strategy(conflict_strategy)
        variables = variables or {}
        root = Path(target_root).resolve()
        plan = CopyPlan(conflict_strategy=conflict_strategy)
        # dest(상대 posix) → 이번 실행에서 해당 dest를 요청한 템플릿들
        claimed: dict[str, list[str]] = {}

        for manifest in manifests:
            for source, dest in manifest.file_map.items():
                if cancel is not None and cancel.is_set():
                    plan.cancelled = True
                    logger.warning(
                        f"Materialization cancelled after {len(plan.entries)} files"
                    )
                    return plan
                self._copy_one(
                    manifest, source, dest, root, variables, conflict_strategy,
                    claimed, plan,
                )

        logger.info(
            f"Materialized {len(plan.entries)} files into {root} "
            f"({len(plan.collisions)} collisions, {len(plan.errors)} errors)"
        )
        return plan

    def _copy_one(
        self,
        manifest: TemplateManifest,
        source: str,
        dest: str,
        root: Path,
        variables: Mapping[str, str],
        conflict_strategy: str,
        claimed: dict[str, list[str]],
        plan: CopyPlan,
    ) -> None:
        template_id = manifest.template_id
        dest_rel = substitute_variables(dest, variables)
        dest_path = (root / dest_rel).resolve()
        if not dest_path.is_relative_to(root) or dest_path == root:
            plan.errors.append(
                CopyError(
                    code=ErrorCodes.WRITE_FAILED,
                    source_template=template_id,
                    source_path=source,
                    dest_path=dest_rel,
                    message=f"Destination escapes target root: {dest_rel}",
                )
            )
            logger.warning(f"{template_id}: destination escapes target root: {dest_rel}")
            return
        key = dest_path.relative_to(root).as_posix()

        source_path = manifest.template_root / source
        try:
            data = source_path.read_bytes()
        except FileNotFoundError:
            plan.errors.append(
                CopyError(
                    code=ErrorCodes.SOURCE_FILE_MISSING,
                    source_template=template_id,
                    source_path=source,
                    dest_path=key,
                    message=f"Source file not found: {source_path}",
                )
            )
            logger.warning(f"{template_id}: source file missing: {source_path}")
            return
        except OSError as e:
            plan.errors.append(
                CopyError(
                    code=ErrorCodes.SOURCE_FILE_MISSING,
                    source_template=template_id,
                    source_path=source,
                    dest_path=key,
                    message=f"Cannot read source file {source_path}: {e}",
                )
            )
            logger.warning(f"{template_id}: cannot read {source_path}: {e}")
            return

        previous = list(claimed.get(key, []))

        text = decode_text(data)
        binary = text is None
        substituted = False
        if text is not None:
            rendered = substitute_variables(text, variables)
            substituted = rendered != text
            data = rendered.encode("utf-8")

        if previous and conflict_strategy == "skip":
            plan.entries.append(
                CopyPlanEntry(
                    source_template=template_id,
                    source_path=source,
                    dest_path=key,
                    resolution=CopyResolution.SKIPPED,
                    conflicts_with=previous,
                    substituted=substituted,
                    binary=binary,
                )
            )
            logger.info(f"{template_id}: skipped {key} (already written by {previous})")
            claimed[key].append(template_id)
            return

        try:
            atomic_write_bytes(dest_path, data, mode_from=source_path)
        except OSError as e:
            plan.errors.append(
                CopyError(
                    code=ErrorCodes.WRITE_FAILED,
                    source_template=template_id,
                    source_path=source,
                    dest_path=key,
                    message=f"Failed to write {dest_path}: {e}",
                )
            )
            logger.warning(f"{template_id}: failed to write {dest_path}: {e}")
            return

        claimed.setdefault(key, []).append(template_id)
        resolution = CopyResolution.OVERWRITTEN if previous else CopyResolution.WRITTEN
        plan.entries.append(
            CopyPlanEntry(
                source_template=template_id,
                source_path=source,
                dest_path=key,
                resolution=resolution,
                conflicts_with=previous,
                substituted=substituted,
                binary=binary,
            )
        )
        if previous:
            logger.info(
                f"{template_id}: {conflict_strategy} {key} (previously written by {previous})"
            )
