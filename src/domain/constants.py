"""
Domain Constants: 합성 엔진 전역 상수.

파일명 정책, 레지스트리 기본값, 판별 규칙 등 시스템 전반에서 사용되는 값들.
"""

import re

# =============================================================================
# Template Directory Structure (템플릿 디렉토리 구조)
# =============================================================================
# <template_root>/
# ├── config.json   # 매니페스트
# └── files/...     # config.json "files"의 source 경로들

MANIFEST_FILENAME = "config.json"

# =============================================================================
# Output Filenames (출력 파일명 정책)
# =============================================================================

ENV_EXAMPLE_FILENAME = ".env.example"
SETUP_DOC_FILENAME = "setup.md"
PACKAGE_MANIFEST_FILENAME = "package.json"

# =============================================================================
# Strategies
# =============================================================================

MERGE_STRATEGIES = ("smart", "highest", "lowest", "compatible", "manual")
DEFAULT_MERGE_STRATEGY = "smart"

CONFLICT_STRATEGIES = ("overwrite", "skip", "merge")
DEFAULT_CONFLICT_STRATEGY = "overwrite"

# =============================================================================
# Peer Analysis (레지스트리 / 캐시)
# =============================================================================

DEFAULT_REGISTRY_URL = "https://registry.npmjs.org/"
PEER_CACHE_FILENAME = "package-cache.json"
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_RETRIES = 3
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_MAX_RETRY_DELAY = 30.0
DEFAULT_MAX_CONCURRENT_REQUESTS = 5
PEER_CACHE_LOCK_TIMEOUT = 10.0

# npm 패키지 이름 규칙 (scope 허용, 소문자만)
PACKAGE_NAME_PATTERN = re.compile(
    r"^(@[a-z0-9-~][a-z0-9-._~]*/)?[a-z0-9-~][a-z0-9-._~]*$"
)
PACKAGE_NAME_MAX_LENGTH = 214

# 일시적 네트워크 실패 판별 (소문자 비교)
TRANSIENT_ERROR_PATTERNS = (
    "enotfound",
    "econnrefused",
    "etimedout",
    "econnreset",
    "eai_again",
    "network",
    "timeout",
    "timed out",
    "fetch failed",
    "connection",
    "name resolution",
    "temporarily unavailable",
)

# =============================================================================
# Materialization
# =============================================================================

# 바이너리 판별: 앞부분 probe window 안에 NUL 바이트가 있으면 바이너리
BINARY_PROBE_BYTES = 8192

# =============================================================================
# ID Prefixes
# =============================================================================

COMPOSE_RUN_ID_PREFIX = "COMPOSE-"
