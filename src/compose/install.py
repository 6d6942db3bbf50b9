"""
InstallationOrchestrator: 패키지 매니저 설치 (외부 경계).

이 모듈은 프로세스를 직접 실행하지 않음.
실제 설치는 PackageInstaller 구현체(호출자 제공)가 담당.

흐름:
    merged → {dependencies, devDependencies} manifest
    → installer.run() (재시도 + 지수 백오프)
    → peer dependency 실패면 legacy_peer_deps=True로 1회 재시도
    → 실패 분류 + 복구 제안
"""

import logging
from pathlib import Path
from typing import Any, Protocol

from src.domain.schemas import (
    InstallOutcome,
    InstallResult,
    MergedDependencySet,
    ProjectInfo,
)
from src.utils.retry import (
    NonRetryableError,
    RetryableError,
    retry_with_exponential_backoff,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Error Types
# =============================================================================

class InstallErrorType:
    """설치 실패 분류."""

    NETWORK = "network"
    PERMISSION = "permission"
    DISK_SPACE = "disk_space"
    PACKAGE_NOT_FOUND = "package_not_found"
    VERSION_CONFLICT = "version_conflict"
    PEER_DEPENDENCY = "peer_dependency"
    TIMEOUT = "timeout"
    PROCESS = "process"
    UNKNOWN = "unknown"


# 재시도해도 결과가 같은 실패
NON_RETRYABLE_TYPES = frozenset({
    InstallErrorType.PERMISSION,
    InstallErrorType.DISK_SPACE,
    InstallErrorType.PACKAGE_NOT_FOUND,
    InstallErrorType.VERSION_CONFLICT,
    InstallErrorType.PROCESS,
})

RECOVERY_SUGGESTIONS: dict[str, list[str]] = {
    InstallErrorType.NETWORK: [
        "Check your internet connection",
        "Configure the package manager to use a different registry",
        "Check if a firewall or proxy is blocking the connection",
    ],
    InstallErrorType.PERMISSION: [
        "Check file and directory permissions in the project folder",
        "Configure the package manager to use a user-writable global directory",
    ],
    InstallErrorType.DISK_SPACE: [
        "Free up disk space",
        "Clean the package manager cache (npm cache clean --force)",
        "Remove node_modules and try again",
    ],
    InstallErrorType.PACKAGE_NOT_FOUND: [
        "Check that the package name is spelled correctly",
        "Verify the package and version exist in the registry",
    ],
    InstallErrorType.VERSION_CONFLICT: [
        "Update package.json to use compatible versions",
        "Use npm ls to identify conflicting dependencies",
        "Remove node_modules and the lockfile, then reinstall",
    ],
    InstallErrorType.PEER_DEPENDENCY: [
        "Install the required peer dependencies manually",
        "Use npm install --legacy-peer-deps as a temporary workaround",
    ],
    InstallErrorType.TIMEOUT: [
        "Try again with a longer timeout",
        "Clear the package manager cache and try again",
    ],
    InstallErrorType.PROCESS: [
        "Ensure the package manager is installed and on PATH",
    ],
    InstallErrorType.UNKNOWN: [
        "Remove node_modules and the lockfile, then reinstall",
        "Clear the package manager cache",
    ],
}


def classify_install_failure(output: str) -> str:
    """
    설치 출력(stdout + stderr 또는 예외 메시지) → InstallErrorType.

    패턴 우선순위: peer dependency > network > permission > disk_space
                  > package_not_found > version_conflict > timeout
    """
    text = output.lower()

    if "eresolve" in text or "peer dep" in text or "conflicting peer dependency" in text:
        return InstallErrorType.PEER_DEPENDENCY
    if "enotfound" in text or "network" in text or "econnrefused" in text:
        return InstallErrorType.NETWORK
    if "eacces" in text or "eperm" in text or "permission denied" in text:
        return InstallErrorType.PERMISSION
    if "enospc" in text or "no space" in text or "disk space" in text:
        return InstallErrorType.DISK_SPACE
    if "e404" in text or "404" in text or "not found" in text:
        return InstallErrorType.PACKAGE_NOT_FOUND
    if ("version" in text and "conflict" in text) or "conflicting" in text:
        return InstallErrorType.VERSION_CONFLICT
    if "timed out" in text or "etimedout" in text or "timeout" in text:
        return InstallErrorType.TIMEOUT
    return InstallErrorType.UNKNOWN


def build_package_manifest(
    merged: MergedDependencySet,
    project_info: ProjectInfo | None = None,
) -> dict[str, Any]:
    """병합 결과 → package.json 형태 dict (키 순서 = 병합 순서)."""
    project_info = project_info or ProjectInfo()
    manifest: dict[str, Any] = {
        "name": project_info.name,
        "version": "0.1.0",
        "private": True,
    }
    if project_info.description:
        manifest["description"] = project_info.description
    manifest["dependencies"] = dict(merged.dependencies)
    manifest["devDependencies"] = dict(merged.dev_dependencies)
    return manifest


# =============================================================================
# Installer Contract
# =============================================================================

class PackageInstaller(Protocol):
    """
    패키지 매니저 실행 경계.

    구현체는 manifest를 target_dir에 반영하고 설치 프로세스를 실행.
    """

    async def run(
        self,
        manifest: dict[str, Any],
        target_dir: Path,
        legacy_peer_deps: bool = False,
    ) -> InstallResult: ...


class InstallationOrchestrator:
    """
    설치 재시도 / 실패 분류 / 복구 제안.

    Usage:
        orchestrator = InstallationOrchestrator(my_installer, retries=2)
        outcome = await orchestrator.install(merged, target_dir)
    """

    def __init__(
        self,
        installer: PackageInstaller,
        retries: int = 2,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
    ):
        self.installer = installer
        self.retries = retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay

    async def install(
        self,
        merged: MergedDependencySet,
        target_dir: Path,
        project_info: ProjectInfo | None = None,
    ) -> InstallOutcome:
        """
        설치 실행.

        Returns:
            InstallOutcome (실패도 예외 없이 결과로 반환)
        """
        manifest = build_package_manifest(merged, project_info)
        state: dict[str, Any] = {"attempts": 0, "legacy": False, "last": None}

        async def attempt() -> InstallResult:
            state["attempts"] += 1
            try:
                result = await self.installer.run(
                    manifest, target_dir, legacy_peer_deps=state["legacy"]
                )
            except TimeoutError as e:
                raise RetryableError(f"Installation timed out: {e}") from e
            except OSError as e:
                error_type = classify_install_failure(str(e))
                if error_type == InstallErrorType.UNKNOWN:
                    error_type = InstallErrorType.PROCESS
                raise NonRetryableError(str(e), payload=error_type) from e

            state["last"] = result
            if result.success:
                return result

            output = f"{result.stdout}\n{result.stderr}"
            error_type = classify_install_failure(output)
            message = f"Installation failed with exit code {result.exit_code}"
            if error_type == InstallErrorType.PEER_DEPENDENCY and not state["legacy"]:
                logger.warning("Peer dependency conflicts detected, retrying with legacy peer deps")
                state["legacy"] = True
                raise RetryableError(message, payload=error_type)
            if error_type in NON_RETRYABLE_TYPES:
                raise NonRetryableError(message, payload=error_type)
            raise RetryableError(message, payload=error_type)

        try:
            result = await retry_with_exponential_backoff(
                attempt,
                max_retries=self.retries,
                initial_delay=self.retry_delay,
                max_delay=self.max_retry_delay,
                exceptions=(RetryableError,),
            )
        except (RetryableError, NonRetryableError) as e:
            error_type = e.payload or InstallErrorType.TIMEOUT
            logger.error(f"Installation failed ({error_type}) after {state['attempts']} attempts")
            return InstallOutcome(
                success=False,
                attempts=state["attempts"],
                used_legacy_peer_deps=state["legacy"],
                error_type=error_type,
                suggestions=list(RECOVERY_SUGGESTIONS[error_type]),
                last_result=state["last"],
            )

        logger.info(f"Installation succeeded after {state['attempts']} attempts")
        return InstallOutcome(
            success=True,
            attempts=state["attempts"],
            used_legacy_peer_deps=state["legacy"],
            last_result=result,
        )
