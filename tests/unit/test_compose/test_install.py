"""
test_install.py - InstallationOrchestrator 테스트

DoD:
1. 실패 출력 분류 (peer dependency > network > ... > unknown)
2. peer dependency 실패 → legacy peer deps로 1회 재시도
3. 재시도 불가 실패 → 즉시 중단 + 복구 제안
4. 재시도 한도 초과 → 마지막 분류 + 제안
"""

from pathlib import Path
from typing import Any

import pytest

from src.compose.install import (
    InstallationOrchestrator,
    InstallErrorType,
    build_package_manifest,
    classify_install_failure,
)
from src.domain.schemas import InstallResult, MergedDependencySet, ProjectInfo


class FakeInstaller:
    """준비된 결과를 순서대로 반환하는 PackageInstaller."""

    def __init__(self, *results: InstallResult | Exception):
        self.results = list(results)
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        manifest: dict[str, Any],
        target_dir: Path,
        legacy_peer_deps: bool = False,
    ) -> InstallResult:
        self.calls.append(
            {"manifest": manifest, "target_dir": target_dir, "legacy": legacy_peer_deps}
        )
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def failed(stderr: str, exit_code: int = 1) -> InstallResult:
    return InstallResult(success=False, exit_code=exit_code, stderr=stderr)


OK = InstallResult(success=True, stdout="added 42 packages")


@pytest.fixture
def merged() -> MergedDependencySet:
    return MergedDependencySet(
        dependencies={"react": "^18.2.0", "@supabase/supabase-js": "^2.39.0"},
        dev_dependencies={"typescript": "^5.3.0"},
    )


def orchestrator(installer: FakeInstaller, retries: int = 2) -> InstallationOrchestrator:
    return InstallationOrchestrator(installer, retries=retries, retry_delay=0.0, max_retry_delay=0.0)


# =============================================================================
# Classification
# =============================================================================

class TestClassifyInstallFailure:
    """설치 출력 분류."""

    @pytest.mark.parametrize(
        "output,expected",
        [
            ("npm ERR! code ERESOLVE unable to resolve dependency tree", "peer_dependency"),
            ("npm ERR! Conflicting peer dependency: react@17.0.2", "peer_dependency"),
            ("npm ERR! getaddrinfo ENOTFOUND registry.npmjs.org", "network"),
            ("npm ERR! Error: EACCES: permission denied, mkdir", "permission"),
            ("npm ERR! ENOSPC: no space left on device", "disk_space"),
            ("npm ERR! 404 Not Found - GET https://registry.npmjs.org/nope", "package_not_found"),
            ("version conflict between a and b", "version_conflict"),
            ("npm ERR! code ETIMEDOUT", "timeout"),
            ("something odd happened", "unknown"),
        ],
    )
    def test_patterns(self, output: str, expected: str):
        assert classify_install_failure(output) == expected

    def test_peer_dependency_wins_over_network(self):
        output = "ERESOLVE could not resolve; network request also failed"
        assert classify_install_failure(output) == InstallErrorType.PEER_DEPENDENCY


class TestBuildPackageManifest:
    """package.json 형태 manifest."""

    def test_manifest_shape(self, merged):
        manifest = build_package_manifest(merged, ProjectInfo(name="demo", description="Demo"))

        assert manifest["name"] == "demo"
        assert manifest["private"] is True
        assert manifest["description"] == "Demo"
        assert list(manifest["dependencies"]) == ["react", "@supabase/supabase-js"]
        assert manifest["devDependencies"] == {"typescript": "^5.3.0"}

    def test_description_omitted_when_empty(self, merged):
        assert "description" not in build_package_manifest(merged)


# =============================================================================
# Orchestration
# =============================================================================

class TestInstallationOrchestrator:
    """재시도 / legacy peer deps / 제안."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, merged, tmp_path):
        installer = FakeInstaller(OK)
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert outcome.success
        assert outcome.attempts == 1
        assert not outcome.used_legacy_peer_deps
        assert installer.calls[0]["manifest"]["dependencies"]["react"] == "^18.2.0"
        assert installer.calls[0]["target_dir"] == tmp_path

    @pytest.mark.asyncio
    async def test_peer_failure_retries_with_legacy_flag(self, merged, tmp_path):
        installer = FakeInstaller(failed("npm ERR! code ERESOLVE"), OK)
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert outcome.success
        assert outcome.attempts == 2
        assert outcome.used_legacy_peer_deps
        assert [c["legacy"] for c in installer.calls] == [False, True]

    @pytest.mark.asyncio
    async def test_peer_failure_under_legacy_is_retried_normally(self, merged, tmp_path):
        installer = FakeInstaller(
            failed("ERESOLVE"), failed("ERESOLVE"), failed("ERESOLVE")
        )
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert not outcome.success
        assert outcome.attempts == 3
        assert outcome.error_type == "peer_dependency"
        assert any("--legacy-peer-deps" in s for s in outcome.suggestions)

    @pytest.mark.asyncio
    async def test_non_retryable_failure_stops_immediately(self, merged, tmp_path):
        installer = FakeInstaller(failed("npm ERR! code EACCES"), OK)
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert not outcome.success
        assert outcome.attempts == 1
        assert outcome.error_type == "permission"
        assert outcome.last_result.stderr == "npm ERR! code EACCES"
        assert outcome.suggestions

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, merged, tmp_path):
        installer = FakeInstaller(failed("getaddrinfo ENOTFOUND"), OK)
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert outcome.success
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, merged, tmp_path):
        installer = FakeInstaller(*[failed("ENOTFOUND")] * 3)
        outcome = await orchestrator(installer, retries=1).install(merged, tmp_path)

        assert not outcome.success
        assert outcome.attempts == 2
        assert outcome.error_type == "network"
        assert "Check your internet connection" in outcome.suggestions

    @pytest.mark.asyncio
    async def test_process_error_is_not_retried(self, merged, tmp_path):
        installer = FakeInstaller(OSError("[Errno 8] Exec format error"))
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert not outcome.success
        assert outcome.attempts == 1
        assert outcome.error_type == "process"

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, merged, tmp_path):
        installer = FakeInstaller(TimeoutError("install took too long"), OK)
        outcome = await orchestrator(installer).install(merged, tmp_path)

        assert outcome.success
        assert outcome.attempts == 2
