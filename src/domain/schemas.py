"""
Data schemas for the composition engine.

규칙:
- 모든 엔티티는 compose() 호출 1회에 소유됨 (peer 캐시 제외)
- TemplateManifest는 로드 후 불변 (frozen, 매핑은 read-only view)
- 직렬화는 to_dict() 기준, 키 순서 = 입력/선언 순서 (결정론적 출력)
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from src.domain.constants import (
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_CONFLICT_STRATEGY,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_REGISTRY_URL,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TIMEOUT_MS,
)

# =============================================================================
# Selection / Manifest
# =============================================================================

@dataclass(frozen=True)
class Selection:
    """사용자가 선택한 템플릿 1개."""
    template_root: Path
    sdk: str
    template_name: str

    @property
    def template_id(self) -> str:
        return f"{self.sdk}/{self.template_name}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Selection":
        return cls(
            template_root=Path(data["template_root"]),
            sdk=data["sdk"],
            template_name=data["template_name"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_root": str(self.template_root),
            "sdk": self.sdk,
            "template_name": self.template_name,
        }


@dataclass(frozen=True)
class EnvVarSpec:
    """환경 변수 선언 (envVars 항목)."""
    name: str
    description: str
    example_value: str = ""
    required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "example": self.example_value,
            "required": self.required,
        }


@dataclass(frozen=True)
class DocExample:
    """setup.md에 들어갈 코드 예제."""
    title: str
    code: str
    description: str = ""
    language: str = ""


@dataclass(frozen=True)
class TemplateDocs:
    """문서 조각. 없는 필드는 None (빈 heading으로 렌더하지 않음)."""
    setup: str | None = None
    installation: str | None = None
    configuration: str | None = None
    usage: str | None = None
    troubleshooting: str | None = None
    examples: tuple[DocExample, ...] = ()


@dataclass(frozen=True, eq=False)
class TemplateManifest:
    """
    검증된 템플릿 매니페스트.

    identity: (sdk, template_name)
    eq=False: 캐시된 객체는 참조 동일성으로 비교
    """
    sdk: str
    template_name: str
    template_root: Path
    name: str
    description: str
    dependencies: Mapping[str, str]
    dev_dependencies: Mapping[str, str]
    environment_variables: tuple[EnvVarSpec, ...]
    file_map: Mapping[str, str]
    documentation: TemplateDocs = field(default_factory=TemplateDocs)
    display_name: str | None = None
    tags: tuple[str, ...] = ()
    visible: bool = True

    @property
    def template_id(self) -> str:
        return f"{self.sdk}/{self.template_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sdk": self.sdk,
            "template_name": self.template_name,
            "template_root": str(self.template_root),
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "tags": list(self.tags),
            "visible": self.visible,
            "dependencies": dict(self.dependencies),
            "dev_dependencies": dict(self.dev_dependencies),
            "environment_variables": [
                v.to_dict() for v in self.environment_variables
            ],
            "file_map": dict(self.file_map),
        }


@dataclass
class LoadManyResult:
    """ManifestStore.load_many() 결과: 성공 subset + 실패 목록."""
    manifests: list[TemplateManifest] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# =============================================================================
# Dependency Merge
# =============================================================================

class Severity(str, Enum):
    """충돌 심각도 (리포트용, 차단 조건 아님)."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RequestedBy:
    """패키지 범위를 요청한 템플릿."""
    sdk: str
    template_name: str
    range: str

    def to_dict(self) -> dict[str, str]:
        return {
            "sdk": self.sdk,
            "template_name": self.template_name,
            "range": self.range,
        }


@dataclass
class Conflict:
    """
    버전 해결 시도 1회 기록.

    error가 있으면 현재 전략으로 자동 해결 불가.
    error_kind == "invalid_semver"는 warning으로 강등된 경우.
    """
    package: str
    dependency_type: str  # dependencies, devDependencies
    requested_by: list[RequestedBy]
    strategy: str
    resolution: str | None = None
    error: str | None = None
    error_kind: str | None = None
    severity: Severity = Severity.LOW

    @property
    def is_unresolved(self) -> bool:
        return self.error is not None and self.error_kind != "invalid_semver"

    def to_dict(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "dependency_type": self.dependency_type,
            "requested_by": [r.to_dict() for r in self.requested_by],
            "strategy": self.strategy,
            "resolution": self.resolution,
            "error": self.error,
            "error_kind": self.error_kind,
            "severity": self.severity.value,
        }


@dataclass
class MergedDependencySet:
    """병합된 의존성 + 충돌/경고 리포트. merge 완료 후 변경 금지."""
    dependencies: dict[str, str] = field(default_factory=dict)
    dev_dependencies: dict[str, str] = field(default_factory=dict)
    conflicts: list[Conflict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def unresolved_conflicts(self) -> list[Conflict]:
        return [c for c in self.conflicts if c.is_unresolved]

    def all_packages(self) -> dict[str, str]:
        """dependencies 우선, devDependencies 보충."""
        combined = dict(self.dependencies)
        for name, version_range in self.dev_dependencies.items():
            combined.setdefault(name, version_range)
        return combined

    def to_dict(self) -> dict[str, Any]:
        return {
            "dependencies": dict(self.dependencies),
            "devDependencies": dict(self.dev_dependencies),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "warnings": list(self.warnings),
        }

    def to_json(self) -> str:
        """결정론적 JSON (동일 입력 → 동일 바이트)."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)


# =============================================================================
# Peer Analysis
# =============================================================================

class LookupState(str, Enum):
    """
    패키지 1개 조회 상태.

    PENDING → (CACHE_HIT | FETCHING) → (RESOLVED | FALLBACK)
    """
    PENDING = "pending"
    CACHE_HIT = "cache_hit"
    FETCHING = "fetching"
    RESOLVED = "resolved"
    FALLBACK = "fallback"


class PeerSource(str, Enum):
    """PeerRecord 출처."""
    REGISTRY = "registry"
    CACHE = "cache"
    FALLBACK = "fallback"


@dataclass
class PeerRecord:
    """패키지 1개의 peer dependency 정보 (실제/캐시/fallback)."""
    package: str
    requested_range: str
    resolved_version: str | None = None
    peer_dependencies: dict[str, str] = field(default_factory=dict)
    optional_peers: list[str] = field(default_factory=list)
    source: PeerSource = PeerSource.FALLBACK
    fetched_at: str = ""
    fallback_reason: str | None = None
    state: LookupState = LookupState.PENDING
    attempts: int = 0

    @property
    def is_fallback(self) -> bool:
        return self.state == LookupState.FALLBACK

    def to_dict(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "requested_range": self.requested_range,
            "resolved_version": self.resolved_version,
            "peer_dependencies": dict(self.peer_dependencies),
            "optional_peers": list(self.optional_peers),
            "source": self.source.value,
            "fetched_at": self.fetched_at,
            "fallback_reason": self.fallback_reason,
            "state": self.state.value,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeerRecord":
        return cls(
            package=data["package"],
            requested_range=data.get("requested_range", "*"),
            resolved_version=data.get("resolved_version"),
            peer_dependencies=dict(data.get("peer_dependencies", {})),
            optional_peers=list(data.get("optional_peers", [])),
            source=PeerSource(data.get("source", PeerSource.FALLBACK.value)),
            fetched_at=data.get("fetched_at", ""),
            fallback_reason=data.get("fallback_reason"),
            state=LookupState(data.get("state", LookupState.RESOLVED.value)),
            attempts=data.get("attempts", 0),
        )


@dataclass
class PeerConflict:
    """peer dependency 충돌 (항상 advisory)."""
    kind: str  # missing_peer, version_mismatch, version_check_failed
    package: str  # peer를 선언한 패키지
    peer: str
    required_range: str
    present_range: str | None
    severity: Severity
    optional: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "package": self.package,
            "peer": self.peer,
            "required_range": self.required_range,
            "present_range": self.present_range,
            "severity": self.severity.value,
            "optional": self.optional,
            "message": self.message,
        }


@dataclass
class PeerAnalysisReport:
    """PeerDependencyAnalyzer.analyze() 결과."""
    records: list[PeerRecord] = field(default_factory=list)
    conflicts: list[PeerConflict] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    suggested_dependencies: dict[str, str] = field(default_factory=dict)
    offline: bool = False
    cancelled: bool = False

    # counters
    processed: int = 0
    cache_hits: int = 0
    registry_hits: int = 0
    fallbacks_used: int = 0
    malformed_packages: int = 0
    network_failures: int = 0
    lookup_failures: int = 0

    @property
    def high_severity_conflicts(self) -> list[PeerConflict]:
        return [c for c in self.conflicts if c.severity == Severity.HIGH]

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": list(self.errors),
            "recommendations": list(self.recommendations),
            "suggested_dependencies": dict(self.suggested_dependencies),
            "offline": self.offline,
            "cancelled": self.cancelled,
            "summary": {
                "processed": self.processed,
                "cache_hits": self.cache_hits,
                "registry_hits": self.registry_hits,
                "fallbacks_used": self.fallbacks_used,
                "malformed_packages": self.malformed_packages,
                "network_failures": self.network_failures,
                "lookup_failures": self.lookup_failures,
                "conflicts": len(self.conflicts),
                "high_severity": len(self.high_severity_conflicts),
            },
        }


# =============================================================================
# Materialization
# =============================================================================

class CopyResolution(str, Enum):
    """파일 복사 결과."""
    WRITTEN = "written"
    SKIPPED = "skipped"
    OVERWRITTEN = "overwritten"


@dataclass
class CopyPlanEntry:
    """복사 계획 항목 1개."""
    source_template: str
    source_path: str
    dest_path: str
    resolution: CopyResolution
    conflicts_with: list[str] = field(default_factory=list)
    substituted: bool = False
    binary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_template": self.source_template,
            "source_path": self.source_path,
            "dest_path": self.dest_path,
            "conflicts_with": list(self.conflicts_with),
            "resolution": self.resolution.value,
            "substituted": self.substituted,
            "binary": self.binary,
        }


@dataclass
class CopyError:
    """파일 단위 실패 (배치는 계속)."""
    code: str  # SOURCE_FILE_MISSING, WRITE_FAILED
    source_template: str
    source_path: str
    dest_path: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "source_template": self.source_template,
            "source_path": self.source_path,
            "dest_path": self.dest_path,
            "message": self.message,
        }


@dataclass
class CopyPlan:
    """FileMaterializer.materialize() 결과."""
    conflict_strategy: str
    entries: list[CopyPlanEntry] = field(default_factory=list)
    errors: list[CopyError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def collisions(self) -> list[CopyPlanEntry]:
        return [e for e in self.entries if e.conflicts_with]

    def entries_for(self, dest_path: str) -> list[CopyPlanEntry]:
        return [e for e in self.entries if e.dest_path == dest_path]

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_strategy": self.conflict_strategy,
            "entries": [e.to_dict() for e in self.entries],
            "errors": [e.to_dict() for e in self.errors],
            "cancelled": self.cancelled,
            "summary": {
                "files": len(self.entries),
                "collisions": len(self.collisions),
                "errors": len(self.errors),
            },
        }


# =============================================================================
# Config Docs
# =============================================================================

@dataclass
class ProjectInfo:
    """setup.md / .env.example 헤더용 프로젝트 정보."""
    name: str = "my-app"
    description: str = ""
    package_manager: str = "npm"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProjectInfo":
        data = data or {}
        return cls(
            name=data.get("name", "my-app"),
            description=data.get("description", ""),
            package_manager=data.get("package_manager", "npm"),
        )


@dataclass
class GeneratedDocs:
    """ConfigDocGenerator.generate() 결과."""
    env_file: Path
    setup_doc: Path
    variable_count: int = 0
    env_conflicts: list[str] = field(default_factory=list)
    sections: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "env_file": str(self.env_file),
            "setup_doc": str(self.setup_doc),
            "variable_count": self.variable_count,
            "env_conflicts": list(self.env_conflicts),
            "sections": list(self.sections),
        }


# =============================================================================
# Installation (외부 경계)
# =============================================================================

@dataclass
class InstallResult:
    """패키지 매니저 프로세스 결과 (외부 협력자가 반환)."""
    success: bool
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class InstallOutcome:
    """InstallationOrchestrator.install() 결과."""
    success: bool
    attempts: int
    used_legacy_peer_deps: bool = False
    error_type: str | None = None
    suggestions: list[str] = field(default_factory=list)
    last_result: InstallResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "attempts": self.attempts,
            "used_legacy_peer_deps": self.used_legacy_peer_deps,
            "error_type": self.error_type,
            "suggestions": list(self.suggestions),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }


# =============================================================================
# Options / Report
# =============================================================================

@dataclass
class ComposeOptions:
    """compose() 옵션. default.yaml의 compose 섹션에서 로드 가능."""
    offline: bool = False
    enable_peer_analysis: bool = False
    retries: int = DEFAULT_RETRIES
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    conflict_strategy: str = DEFAULT_CONFLICT_STRATEGY
    registry: str = DEFAULT_REGISTRY_URL
    offline_cache_enabled: bool = True
    offline_cache_path: Path | None = None
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    retry_delay: float = DEFAULT_RETRY_DELAY
    max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS
    install: bool = False
    install_retries: int = 2

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ComposeOptions":
        """알 수 없는 키는 무시. 경로는 Path로 변환."""
        data = dict(data or {})
        known = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in data.items() if k in known}
        if kwargs.get("offline_cache_path") is not None:
            kwargs["offline_cache_path"] = Path(kwargs["offline_cache_path"])
        return cls(**kwargs)

    @classmethod
    def from_config(
        cls, config: dict[str, Any], **overrides: Any
    ) -> "ComposeOptions":
        """default.yaml 설정(compose 섹션) + 명시적 인자 override."""
        section = dict(config.get("compose", {}) or {})
        section.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(section)

    def to_dict(self) -> dict[str, Any]:
        return {
            "offline": self.offline,
            "enable_peer_analysis": self.enable_peer_analysis,
            "retries": self.retries,
            "timeout_ms": self.timeout_ms,
            "conflict_strategy": self.conflict_strategy,
            "registry": self.registry,
            "offline_cache_enabled": self.offline_cache_enabled,
            "offline_cache_path": (
                str(self.offline_cache_path) if self.offline_cache_path else None
            ),
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "install": self.install,
        }


class CompositionStatus(str, Enum):
    """최종 결과 3단계."""
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    FAILED = "failed"


@dataclass
class WarningLog:
    """
    경고 로그.

    경고 필수 컨텍스트: level, code, action_id, field_or_slot,
                       original_value, resolved_value, message
    """
    level: str = "warning"
    code: str = ""
    action_id: str = ""
    field_or_slot: str = ""
    original_value: str | None = None
    resolved_value: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "code": self.code,
            "action_id": self.action_id,
            "field_or_slot": self.field_or_slot,
            "original_value": self.original_value,
            "resolved_value": self.resolved_value,
            "message": self.message,
        }


@dataclass
class CompositionReport:
    """
    compose() 1회 결과 집계.

    호출자가 소비 후 폐기 (save_report()로 선택적 보존).
    """
    run_id: str
    started_at: str  # ISO 8601
    strategy: str
    target_root: str
    finished_at: str | None = None
    status: CompositionStatus | None = None

    selections: list[Selection] = field(default_factory=list)
    loaded_templates: list[str] = field(default_factory=list)
    load_errors: list[dict[str, Any]] = field(default_factory=list)
    manifest_summary: dict[str, Any] = field(default_factory=dict)

    merged: MergedDependencySet | None = None
    peer_report: PeerAnalysisReport | None = None
    copy_plan: CopyPlan | None = None
    docs: GeneratedDocs | None = None
    install: InstallOutcome | None = None

    warnings: list[WarningLog] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    counters: dict[str, int] = field(default_factory=dict)

    fatal_error: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (
            CompositionStatus.SUCCESS,
            CompositionStatus.SUCCESS_WITH_WARNINGS,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "status": self.status.value if self.status else None,
            "strategy": self.strategy,
            "target_root": self.target_root,
            "selections": [s.to_dict() for s in self.selections],
            "loaded_templates": list(self.loaded_templates),
            "load_errors": list(self.load_errors),
            "manifest_summary": dict(self.manifest_summary),
            "merged": self.merged.to_dict() if self.merged else None,
            "peer_report": self.peer_report.to_dict() if self.peer_report else None,
            "copy_plan": self.copy_plan.to_dict() if self.copy_plan else None,
            "docs": self.docs.to_dict() if self.docs else None,
            "install": self.install.to_dict() if self.install else None,
            "warnings": [w.to_dict() for w in self.warnings],
            "timings": dict(self.timings),
            "counters": dict(self.counters),
            "fatal_error": self.fatal_error,
        }
