"""
Error definitions for the composition engine.

에러 전파 규칙:
- 개별 항목 실패(템플릿 1개, 패키지 1개, 파일 1개) → 리포트 목록에 수집, 배치 계속
- 전역 전제 조건 실패(빈 선택, 쓰기 불가 target root) → 실행 전체 실패
- 조용한 실패 금지 → 코드가 있는 ComposeError로 명시적 실패
"""

from typing import Any


class ComposeError(Exception):
    """
    합성 엔진 공통 에러.

    Usage:
        raise ManifestInvalid(
            ErrorCodes.MANIFEST_INVALID, "name must be a string", field="name"
        )
    """

    def __init__(self, code: str, message: str, **context: Any) -> None:
        self.code = code
        self.message = message
        self.context = context
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        """로그/JSON 직렬화용."""
        return {
            "code": self.code,
            "message": self.message,
            **{k: _jsonable(v) for k, v in self.context.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# =============================================================================
# ManifestStore
# =============================================================================

class ManifestNotFound(ComposeError):
    """템플릿 root에 config.json 없음."""


class ManifestInvalid(ComposeError):
    """JSON 파싱 실패 또는 필수 필드 누락/타입 오류."""


class FileMissing(ComposeError):
    """files 매핑의 source 경로가 디스크에 없음."""


# =============================================================================
# VersionArbiter / DependencyMerger
# =============================================================================

class InvalidSemver(ComposeError):
    """semver range 파싱 실패. merger에서 warning으로 강등."""


class UnresolvedConflict(ComposeError):
    """자동 해결 불가 충돌 (manual 전략 또는 실제 비호환)."""


class InvalidStrategy(ComposeError, ValueError):
    """알 수 없는 전략 이름."""


# =============================================================================
# PeerDependencyAnalyzer (모두 fallback 레코드로 강등)
# =============================================================================

class MalformedPackageName(ComposeError):
    """패키지 이름 검증 실패. 네트워크 호출 전 거부."""


class NetworkFailure(ComposeError):
    """일시적 네트워크 실패가 재시도 한도까지 반복됨."""


class RegistryLookupFailed(ComposeError):
    """영구 실패 (404, 잘못된 응답, 범위 만족 버전 없음)."""


# =============================================================================
# FileMaterializer / ConfigDocGenerator
# =============================================================================

class SourceFileMissing(ComposeError):
    """복사 시점에 source 파일 없음."""


class WriteFailed(ComposeError):
    """대상 파일 쓰기 실패 또는 target root 밖 경로."""


class GenerationFailed(ComposeError):
    """.env.example / setup.md 생성 실패. 즉시 전파."""


class InstallFailed(ComposeError):
    """패키지 설치 재시도 모두 실패."""


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """에러/경고 코드 상수."""

    # === Pipeline ===
    EMPTY_SELECTION = "EMPTY_SELECTION"
    TARGET_NOT_WRITABLE = "TARGET_NOT_WRITABLE"
    COMPOSE_CANCELLED = "COMPOSE_CANCELLED"  # warning

    # === Manifest ===
    MANIFEST_NOT_FOUND = "MANIFEST_NOT_FOUND"
    MANIFEST_INVALID = "MANIFEST_INVALID"
    FILE_MISSING = "FILE_MISSING"

    # === Versions / Merge ===
    INVALID_SEMVER = "INVALID_SEMVER"  # warning, not reject
    UNRESOLVED_CONFLICT = "UNRESOLVED_CONFLICT"
    INVALID_STRATEGY = "INVALID_STRATEGY"
    KNOWN_INCOMPATIBILITY = "KNOWN_INCOMPATIBILITY"  # warning
    DEPENDENCY_CONFLICT_RESOLVED = "DEPENDENCY_CONFLICT_RESOLVED"  # warning

    # === Peer analysis ===
    MALFORMED_PACKAGE_NAME = "MALFORMED_PACKAGE_NAME"
    NETWORK_FAILURE = "NETWORK_FAILURE"
    REGISTRY_LOOKUP_FAILED = "REGISTRY_LOOKUP_FAILED"
    PEER_FALLBACK_USED = "PEER_FALLBACK_USED"  # warning
    PEER_CONFLICT = "PEER_CONFLICT"  # warning
    PEER_CACHE_LOCK_TIMEOUT = "PEER_CACHE_LOCK_TIMEOUT"

    # === Materialize / Docs ===
    SOURCE_FILE_MISSING = "SOURCE_FILE_MISSING"
    WRITE_FAILED = "WRITE_FAILED"
    FILE_COLLISION = "FILE_COLLISION"  # warning
    ENV_VAR_CONFLICT = "ENV_VAR_CONFLICT"  # warning
    GENERATION_FAILED = "GENERATION_FAILED"

    # === Install ===
    INSTALL_FAILED = "INSTALL_FAILED"
