"""
DependencyMerger: N개 매니페스트의 직접 의존성 병합.

규칙:
- 템플릿은 호출자 순서, 패키지는 매니페스트 선언 순서로 처리 (결정론적)
- 같은 range 재등장은 충돌 아님
- 해결 시도는 성공/실패 모두 conflicts에 기록
- error 결과 → 처음 본 range 유지 + warnings 추가
- dependencies / devDependencies는 독립 병합 (양쪽에 있으면 양쪽 유지)
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from src.deps.versions import (
    KIND_INVALID_SEMVER,
    KIND_MANUAL,
    min_version,
    range_signature,
    resolve,
    validate_strategy,
)
from src.domain.constants import DEFAULT_MERGE_STRATEGY
from src.domain.errors import ErrorCodes, InvalidSemver, UnresolvedConflict
from src.domain.schemas import (
    Conflict,
    MergedDependencySet,
    RequestedBy,
    Severity,
    TemplateManifest,
)

logger = logging.getLogger(__name__)

DEPENDENCIES = "dependencies"
DEV_DEPENDENCIES = "devDependencies"


# =============================================================================
# Known Incompatibilities
# =============================================================================

@dataclass(frozen=True)
class KnownIncompatibility:
    """병합 후 검사하는 알려진 프레임워크 비호환 조합."""
    package: str
    other: str
    is_incompatible: Callable[[str, str], bool]
    message: str


def _majors_differ(a: str, b: str) -> bool:
    va, vb = min_version(a), min_version(b)
    return va is not None and vb is not None and va.major != vb.major


def _next_requires_react_18(next_range: str, react_range: str) -> bool:
    vn, vr = min_version(next_range), min_version(react_range)
    return vn is not None and vr is not None and vn.major >= 14 and vr.major < 18


KNOWN_INCOMPATIBILITIES: tuple[KnownIncompatibility, ...] = (
    KnownIncompatibility(
        "react",
        "@types/react",
        _majors_differ,
        "Ensure React and @types/react have matching major versions",
    ),
    KnownIncompatibility(
        "next",
        "react",
        _next_requires_react_18,
        "Next.js 14+ requires React 18 or higher",
    ),
)


def check_known_incompatibilities(packages: dict[str, str]) -> list[str]:
    """
    알려진 비호환 조합 검사.

    Args:
        packages: 병합된 이름 → range (dependencies + devDependencies)

    Returns:
        warning 메시지 목록 (파싱 불가 range는 건너뜀)
    """
    warnings: list[str] = []
    for rule in KNOWN_INCOMPATIBILITIES:
        a, b = packages.get(rule.package), packages.get(rule.other)
        if a is None or b is None:
            continue
        try:
            incompatible = rule.is_incompatible(a, b)
        except InvalidSemver:
            continue
        if incompatible:
            warnings.append(
                f"Known incompatibility: {rule.package}@{a} with "
                f"{rule.other}@{b}. {rule.message}"
            )
    return warnings


# =============================================================================
# Merger
# =============================================================================

class DependencyMerger:
    """
    템플릿 의존성 병합기.

    Usage:
        merger = DependencyMerger(strategy="highest")
        merged = merger.merge(manifests)
    """

    def __init__(self, strategy: str = DEFAULT_MERGE_STRATEGY) -> None:
        validate_strategy(strategy)
        self.strategy = strategy

    def set_strategy(self, strategy: str) -> None:
        """
        기본 전략 변경.

        Raises:
            InvalidStrategy: 알 수 없는 전략
        """
        validate_strategy(strategy)
        self.strategy = strategy

    def merge(
        self,
        manifests: Sequence[TemplateManifest],
        strategy: str | None = None,
    ) -> MergedDependencySet:
        """
        매니페스트 의존성 병합.

        Args:
            manifests: 선택 순서대로의 매니페스트
            strategy: 이번 병합에만 쓸 전략 (None이면 인스턴스 기본값)

        Returns:
            MergedDependencySet
        """
        active = strategy or self.strategy
        validate_strategy(active)

        result = MergedDependencySet()
        self._merge_section(manifests, DEPENDENCIES, active, result)
        self._merge_section(manifests, DEV_DEPENDENCIES, active, result)

        result.warnings.extend(check_known_incompatibilities(result.all_packages()))

        logger.info(
            f"Merged {len(manifests)} templates with strategy={active}: "
            f"{len(result.dependencies)} deps, {len(result.dev_dependencies)} devDeps, "
            f"{len(result.conflicts)} conflicts"
        )
        return result

    def _merge_section(
        self,
        manifests: Sequence[TemplateManifest],
        dependency_type: str,
        strategy: str,
        result: MergedDependencySet,
    ) -> None:
        target = (
            result.dependencies if dependency_type == DEPENDENCIES
            else result.dev_dependencies
        )
        origins: dict[str, list[RequestedBy]] = {}

        for manifest in manifests:
            declared = (
                manifest.dependencies if dependency_type == DEPENDENCIES
                else manifest.dev_dependencies
            )
            for name, version_range in declared.items():
                requester = RequestedBy(
                    manifest.sdk, manifest.template_name, version_range
                )
                if name not in target:
                    target[name] = version_range
                    origins[name] = [requester]
                    continue

                current = target[name]
                if range_signature(current) == range_signature(version_range):
                    origins[name].append(requester)
                    continue

                outcome = resolve(current, version_range, strategy)
                conflict = Conflict(
                    package=name,
                    dependency_type=dependency_type,
                    requested_by=[*origins[name], requester],
                    strategy=strategy,
                    resolution=outcome.version,
                    error=outcome.error,
                    error_kind=outcome.error_kind,
                    severity=outcome.severity,
                )
                result.conflicts.append(conflict)
                origins[name].append(requester)

                if outcome.ok:
                    target[name] = outcome.version
                    if outcome.severity != Severity.LOW:
                        result.warnings.append(
                            f"Version conflict resolved for {name}: "
                            f"{current} → {outcome.version} ({outcome.severity.value} risk)"
                        )
                    continue

                # 실패 → 처음 본 range 유지
                if outcome.error_kind == KIND_INVALID_SEMVER:
                    message = (
                        f"Invalid semver versions for {name}: {current} vs "
                        f"{version_range}; keeping {current}"
                    )
                elif outcome.error_kind == KIND_MANUAL:
                    message = (
                        f"Manual resolution required for {name}: {current} vs "
                        f"{version_range}; keeping {current}"
                    )
                else:
                    message = (
                        f"Incompatible versions for {name}: {current} vs "
                        f"{version_range}; keeping {current}"
                    )
                result.warnings.append(message)
                logger.warning(message)

    @staticmethod
    def ensure_resolved(merged: MergedDependencySet) -> None:
        """
        미해결 충돌이 있으면 실패 (설치 직전 등 엄격 모드용).

        Raises:
            UnresolvedConflict: manual 전략 또는 실제 비호환 충돌 존재
        """
        unresolved = merged.unresolved_conflicts
        if unresolved:
            raise UnresolvedConflict(
                ErrorCodes.UNRESOLVED_CONFLICT,
                f"{len(unresolved)} dependency conflicts need manual resolution",
                packages=[c.package for c in unresolved],
            )

    @staticmethod
    def conflict_report(merged: MergedDependencySet) -> dict[str, Any]:
        """심각도별 집계 + 미해결 충돌 목록."""
        by_severity = {s.value: 0 for s in Severity}
        for conflict in merged.conflicts:
            by_severity[conflict.severity.value] += 1
        return {
            "total": len(merged.conflicts),
            "unresolved": [c.to_dict() for c in merged.unresolved_conflicts],
            "by_severity": by_severity,
            "warnings": len(merged.warnings),
        }
