"""
npm 레지스트리 조회 (httpx 비동기).

역할:
- packument 조회: GET {registry}/{name} (scope는 @scope%2Fname)
- range를 만족하는 최고 버전의 peerDependencies / peerDependenciesMeta 추출

실패 분류:
- 일시적 (재시도 대상): 연결/DNS/timeout, HTTP 429, 5xx → NetworkFailure
- 영구: 404, 잘못된 응답, 만족 버전 없음 → RegistryLookupFailed
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from src.deps.versions import max_satisfying, try_parse_range
from src.domain.constants import (
    DEFAULT_REGISTRY_URL,
    DEFAULT_TIMEOUT_MS,
    PACKAGE_NAME_MAX_LENGTH,
    PACKAGE_NAME_PATTERN,
    TRANSIENT_ERROR_PATTERNS,
)
from src.domain.errors import ErrorCodes, NetworkFailure, RegistryLookupFailed

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8"


def is_valid_package_name(name: str) -> bool:
    """npm 패키지 이름 검증 (소문자, scope 허용, 214자 이하)."""
    return (
        isinstance(name, str)
        and 0 < len(name) <= PACKAGE_NAME_MAX_LENGTH
        and PACKAGE_NAME_PATTERN.match(name) is not None
    )


def is_transient_error(error: BaseException) -> bool:
    """
    일시적 실패 여부 (메시지 패턴 매칭).

    NetworkFailure, httpx 전송 계층 에러는 항상 일시적.
    """
    if isinstance(error, (NetworkFailure, httpx.TransportError, TimeoutError)):
        return True
    if isinstance(error, RegistryLookupFailed):
        return False
    message = f"{type(error).__name__} {error}".lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


def package_url(registry: str, name: str) -> str:
    return f"{registry.rstrip('/')}/{quote(name, safe='@')}"


@dataclass
class PackagePeers:
    """레지스트리 조회 결과 (버전 1개)."""
    version: str
    peer_dependencies: dict[str, str] = field(default_factory=dict)
    optional_peers: list[str] = field(default_factory=list)


def select_version(packument: dict[str, Any], version_range: str) -> str | None:
    """
    packument에서 range를 만족하는 버전 선택.

    dist-tag 이름(latest 등)이나 파싱 불가 range는 dist-tags로 해석.
    """
    versions = packument.get("versions")
    dist_tags = packument.get("dist-tags") or {}
    if not isinstance(versions, dict):
        return None
    if version_range in dist_tags:
        return dist_tags[version_range]
    if try_parse_range(version_range) is None:
        latest = dist_tags.get("latest")
        return latest if latest in versions else None
    return max_satisfying(list(versions), version_range)


def extract_peers(manifest: dict[str, Any]) -> tuple[dict[str, str], list[str]]:
    """버전 manifest → (peerDependencies, optional peer 이름 목록)."""
    peers = manifest.get("peerDependencies") or {}
    meta = manifest.get("peerDependenciesMeta") or {}
    if not isinstance(peers, dict):
        peers = {}
    peer_map = {str(k): str(v) for k, v in peers.items()}
    optional = [
        name
        for name, info in (meta.items() if isinstance(meta, dict) else [])
        if isinstance(info, dict) and info.get("optional") is True
    ]
    return peer_map, optional


class NpmRegistryClient:
    """
    npm 레지스트리 클라이언트.

    Usage:
        async with NpmRegistryClient() as client:
            peers = await client.fetch_peers("react-dom", "^18.2.0")
    """

    def __init__(
        self,
        registry_url: str = DEFAULT_REGISTRY_URL,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        client: httpx.AsyncClient | None = None,
    ):
        self.registry_url = registry_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_ms / 1000.0,
            headers={"Accept": ACCEPT_HEADER},
            follow_redirects=True,
        )

    async def __aenter__(self) -> "NpmRegistryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_packument(self, name: str) -> dict[str, Any]:
        """
        packument 조회.

        Raises:
            NetworkFailure: 연결/timeout/429/5xx
            RegistryLookupFailed: 404, 기타 4xx, JSON 아님
        """
        url = package_url(self.registry_url, name)
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise NetworkFailure(
                ErrorCodes.NETWORK_FAILURE,
                f"Registry request timeout for {name}: {e}",
                package=name,
            ) from e
        except httpx.TransportError as e:
            raise NetworkFailure(
                ErrorCodes.NETWORK_FAILURE,
                f"Registry connection failed for {name}: {e}",
                package=name,
            ) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise NetworkFailure(
                ErrorCodes.NETWORK_FAILURE,
                f"Registry temporarily unavailable ({status}) for {name}",
                package=name,
                status=status,
            )
        if status == 404:
            raise RegistryLookupFailed(
                ErrorCodes.REGISTRY_LOOKUP_FAILED,
                f"Package not found in registry: {name}",
                package=name,
                status=status,
            )
        if status >= 400:
            raise RegistryLookupFailed(
                ErrorCodes.REGISTRY_LOOKUP_FAILED,
                f"Registry rejected request ({status}) for {name}",
                package=name,
                status=status,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise RegistryLookupFailed(
                ErrorCodes.REGISTRY_LOOKUP_FAILED,
                f"Malformed registry response for {name}",
                package=name,
            ) from e
        if not isinstance(data, dict):
            raise RegistryLookupFailed(
                ErrorCodes.REGISTRY_LOOKUP_FAILED,
                f"Malformed registry response for {name}",
                package=name,
            )
        return data

    async def fetch_peers(self, name: str, version_range: str) -> PackagePeers:
        """
        range를 만족하는 최고 버전의 peer 정보.

        Raises:
            NetworkFailure: 일시적 실패
            RegistryLookupFailed: 영구 실패 / 만족 버전 없음
        """
        packument = await self.fetch_packument(name)
        version = select_version(packument, version_range)
        if version is None:
            raise RegistryLookupFailed(
                ErrorCodes.REGISTRY_LOOKUP_FAILED,
                f"No published version of {name} satisfies {version_range}",
                package=name,
                range=version_range,
            )
        manifest = packument["versions"].get(version) or {}
        peers, optional = extract_peers(manifest if isinstance(manifest, dict) else {})
        logger.debug(f"Registry: {name}@{version_range} → {version} ({len(peers)} peers)")
        return PackagePeers(version=version, peer_dependencies=peers, optional_peers=optional)
