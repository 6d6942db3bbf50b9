"""
ManifestStore: 템플릿 매니페스트(config.json) 로드 + 검증 + 캐시.

핵심 규칙:
- 닫힌 스키마: 알 수 없는 키는 ManifestInvalid
- 필수: name, description, packages, envVars, files
- 선택: devPackages, displayName, tags, visible, 문서 필드(setup 등), examples
- files의 모든 source 경로는 template root 안의 실제 파일이어야 함 (FileMissing)
- 캐시 키 (sdk, template_name), 반복 로드 → 동일 객체 반환
- load_many: 템플릿 하나 실패가 나머지 로드를 막지 않음
"""

import json
import logging
import time
from collections.abc import Iterable
from pathlib import Path
from types import MappingProxyType
from typing import Any

from src.domain.constants import MANIFEST_FILENAME
from src.domain.errors import (
    ComposeError,
    ErrorCodes,
    FileMissing,
    ManifestInvalid,
    ManifestNotFound,
)
from src.domain.schemas import (
    DocExample,
    EnvVarSpec,
    LoadManyResult,
    Selection,
    TemplateDocs,
    TemplateManifest,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Schema
# =============================================================================

REQUIRED_FIELDS = ("name", "description", "packages", "envVars", "files")
DOC_FIELDS = ("setup", "installation", "configuration", "usage", "troubleshooting")
OPTIONAL_FIELDS = (
    "devPackages",
    "displayName",
    "tags",
    "visible",
    "examples",
    *DOC_FIELDS,
)
ALLOWED_FIELDS = frozenset(REQUIRED_FIELDS + OPTIONAL_FIELDS)

PACKAGE_FIELDS = frozenset({"name", "version"})
ENV_VAR_FIELDS = frozenset({"name", "description", "required", "example", "defaultValue"})
EXAMPLE_FIELDS = frozenset({"title", "description", "language", "code"})


def _check_packages(data: Any, field_name: str, errors: list[str]) -> dict[str, str]:
    packages: dict[str, str] = {}
    if not isinstance(data, list):
        errors.append(f"{field_name} must be an array")
        return packages
    for index, item in enumerate(data):
        where = f"{field_name}[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{where} must be an object")
            continue
        unknown = set(item) - PACKAGE_FIELDS
        if unknown:
            errors.append(f"{where} has unknown keys: {sorted(unknown)}")
        name, version = item.get("name"), item.get("version")
        if not isinstance(name, str) or not name:
            errors.append(f"{where}.name must be a non-empty string")
            continue
        if not isinstance(version, str):
            errors.append(f"{where}.version must be a string")
            continue
        if name in packages:
            errors.append(f"{where}: duplicate package '{name}'")
            continue
        packages[name] = version
    return packages


def _check_env_vars(data: Any, errors: list[str]) -> tuple[EnvVarSpec, ...]:
    specs: list[EnvVarSpec] = []
    if not isinstance(data, list):
        errors.append("envVars must be an array")
        return ()
    for index, item in enumerate(data):
        where = f"envVars[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{where} must be an object")
            continue
        unknown = set(item) - ENV_VAR_FIELDS
        if unknown:
            errors.append(f"{where} has unknown keys: {sorted(unknown)}")
        name, description = item.get("name"), item.get("description")
        required = item.get("required", False)
        example = item.get("example", item.get("defaultValue", ""))
        if not isinstance(name, str) or not name:
            errors.append(f"{where}.name must be a non-empty string")
            continue
        if not isinstance(description, str):
            errors.append(f"{where}.description must be a string")
            continue
        if not isinstance(required, bool):
            errors.append(f"{where}.required must be a boolean")
            continue
        if not isinstance(example, str):
            errors.append(f"{where}.example must be a string")
            continue
        specs.append(EnvVarSpec(name, description, example, required))
    return tuple(specs)


def _check_examples(data: Any, errors: list[str]) -> tuple[DocExample, ...]:
    examples: list[DocExample] = []
    if not isinstance(data, list):
        errors.append("examples must be an array")
        return ()
    for index, item in enumerate(data):
        where = f"examples[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{where} must be an object")
            continue
        unknown = set(item) - EXAMPLE_FIELDS
        if unknown:
            errors.append(f"{where} has unknown keys: {sorted(unknown)}")
        if not isinstance(item.get("code"), str):
            errors.append(f"{where}.code must be a string")
            continue
        if not all(isinstance(item.get(k, ""), str) for k in ("title", "description", "language")):
            errors.append(f"{where}: title/description/language must be strings")
            continue
        examples.append(
            DocExample(
                title=item.get("title", "Basic Usage"),
                code=item["code"],
                description=item.get("description", ""),
                language=item.get("language", "javascript"),
            )
        )
    return tuple(examples)


def _check_files(
    data: Any, template_root: Path, errors: list[str]
) -> tuple[dict[str, str], list[str]]:
    """files 매핑 검증. (매핑, 누락 source 목록) 반환."""
    files: dict[str, str] = {}
    missing: list[str] = []
    if not isinstance(data, dict):
        errors.append("files must be an object")
        return files, missing

    root = template_root.resolve()
    for source, dest in data.items():
        if not isinstance(dest, str) or not dest:
            errors.append(f"files['{source}'] must be a non-empty string")
            continue
        if not source or Path(source).is_absolute():
            errors.append(f"files source must be a relative path: '{source}'")
            continue
        resolved = (root / source).resolve()
        if not resolved.is_relative_to(root):
            errors.append(f"files source escapes template root: '{source}'")
            continue
        files[source] = dest
        if not resolved.is_file():
            missing.append(source)
    return files, missing


def validate_manifest_data(
    data: Any,
    template_root: Path,
    sdk: str,
    template_name: str,
) -> TemplateManifest:
    """
    config.json 내용 검증 → TemplateManifest.

    모든 스키마 오류를 모아 한 번에 보고.

    Args:
        data: json.loads 결과
        template_root: 템플릿 루트 (files source 기준)
        sdk: SDK 이름
        template_name: 템플릿 이름

    Returns:
        불변 TemplateManifest

    Raises:
        ManifestInvalid: 스키마 위반
        FileMissing: files source가 존재하지 않음
    """
    template_id = f"{sdk}/{template_name}"
    if not isinstance(data, dict):
        raise ManifestInvalid(
            ErrorCodes.MANIFEST_INVALID,
            f"{MANIFEST_FILENAME} must contain a JSON object",
            template=template_id,
        )

    errors: list[str] = []
    for key in REQUIRED_FIELDS:
        if key not in data:
            errors.append(f"missing required field '{key}'")
    unknown = sorted(set(data) - ALLOWED_FIELDS)
    if unknown:
        errors.append(f"unknown fields: {unknown}")

    for key in ("name", "description", "displayName", *DOC_FIELDS):
        if key in data and not isinstance(data[key], str):
            errors.append(f"{key} must be a string")
    if "visible" in data and not isinstance(data["visible"], bool):
        errors.append("visible must be a boolean")
    tags = data.get("tags", [])
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        errors.append("tags must be an array of strings")
        tags = []

    dependencies = _check_packages(data.get("packages", []), "packages", errors)
    dev_dependencies = _check_packages(
        data.get("devPackages", []), "devPackages", errors
    )
    env_vars = _check_env_vars(data.get("envVars", []), errors)
    examples = _check_examples(data.get("examples", []), errors)
    file_map, missing = _check_files(data.get("files", {}), template_root, errors)

    if errors:
        raise ManifestInvalid(
            ErrorCodes.MANIFEST_INVALID,
            f"Invalid manifest for {template_id}: {'; '.join(errors)}",
            template=template_id,
            errors=errors,
        )
    if missing:
        raise FileMissing(
            ErrorCodes.FILE_MISSING,
            f"Template {template_id} references missing files: {', '.join(missing)}",
            template=template_id,
            missing=missing,
        )

    docs = TemplateDocs(
        **{key: data.get(key) or None for key in DOC_FIELDS},
        examples=examples,
    )
    return TemplateManifest(
        sdk=sdk,
        template_name=template_name,
        template_root=template_root,
        name=data["name"],
        description=data["description"],
        dependencies=MappingProxyType(dependencies),
        dev_dependencies=MappingProxyType(dev_dependencies),
        environment_variables=env_vars,
        file_map=MappingProxyType(file_map),
        documentation=docs,
        display_name=data.get("displayName"),
        tags=tuple(tags),
        visible=data.get("visible", True),
    )


# =============================================================================
# Manifest Store
# =============================================================================

class ManifestStore:
    """
    매니페스트 로더 + 캐시.

    프로세스당 인스턴스 1개 (전역 싱글턴 아님).
    ttl_seconds가 주어지면 읽을 때 만료 검사.
    """

    def __init__(self, ttl_seconds: float | None = None):
        """
        Args:
            ttl_seconds: 캐시 TTL (None이면 clear_cache() 전까지 유지)
        """
        self.ttl_seconds = ttl_seconds
        self._cache: dict[tuple[str, str], tuple[TemplateManifest, float]] = {}

    def load(self, template_root: Path, sdk: str, template_name: str) -> TemplateManifest:
        """
        매니페스트 로드 (캐시 우선).

        Args:
            template_root: 템플릿 폴더 (config.json 위치)
            sdk: SDK 이름
            template_name: 템플릿 이름

        Returns:
            TemplateManifest (캐시 hit 시 동일 객체)

        Raises:
            ManifestNotFound: config.json 없음
            ManifestInvalid: JSON/스키마 오류
            FileMissing: files source 없음
        """
        key = (sdk, template_name)
        cached = self._cache.get(key)
        if cached is not None:
            manifest, loaded_at = cached
            if self.ttl_seconds is None or time.monotonic() - loaded_at < self.ttl_seconds:
                return manifest
            del self._cache[key]
            logger.debug(f"Manifest cache expired: {sdk}/{template_name}")

        template_root = Path(template_root)
        manifest_path = template_root / MANIFEST_FILENAME
        if not manifest_path.is_file():
            raise ManifestNotFound(
                ErrorCodes.MANIFEST_NOT_FOUND,
                f"Template configuration not found: {manifest_path}",
                template=f"{sdk}/{template_name}",
                path=str(manifest_path),
            )

        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestInvalid(
                ErrorCodes.MANIFEST_INVALID,
                f"Invalid JSON in {manifest_path}: {e}",
                template=f"{sdk}/{template_name}",
                path=str(manifest_path),
            ) from e

        manifest = validate_manifest_data(data, template_root, sdk, template_name)
        self._cache[key] = (manifest, time.monotonic())
        logger.debug(f"Loaded manifest {manifest.template_id} from {manifest_path}")
        return manifest

    def load_many(self, selections: Iterable[Selection]) -> LoadManyResult:
        """
        선택 목록 독립 로드.

        실패는 errors에 수집, 성공 subset은 선택 순서 유지.

        Args:
            selections: Selection 목록

        Returns:
            LoadManyResult(manifests, errors)
        """
        result = LoadManyResult()
        for selection in selections:
            try:
                manifest = self.load(
                    selection.template_root, selection.sdk, selection.template_name
                )
            except ComposeError as e:
                logger.warning(f"Failed to load template {selection.template_id}: {e}")
                result.errors.append(
                    {"template": selection.template_id, **e.to_dict()}
                )
                continue
            result.manifests.append(manifest)
        return result

    def clear_cache(self) -> None:
        """캐시 전체 초기화."""
        self._cache.clear()

    def is_cached(self, sdk: str, template_name: str) -> bool:
        return (sdk, template_name) in self._cache


def summarize_manifests(manifests: Iterable[TemplateManifest]) -> dict[str, Any]:
    """
    로드된 매니페스트 요약 (리포트용).

    Returns:
        {"templates": n, "packages": n, "dev_packages": n, "files": n,
         "env_vars": n, "by_sdk": {sdk: [template_name, ...]}}
    """
    summary: dict[str, Any] = {
        "templates": 0,
        "packages": 0,
        "dev_packages": 0,
        "files": 0,
        "env_vars": 0,
        "by_sdk": {},
    }
    for manifest in manifests:
        summary["templates"] += 1
        summary["packages"] += len(manifest.dependencies)
        summary["dev_packages"] += len(manifest.dev_dependencies)
        summary["files"] += len(manifest.file_map)
        summary["env_vars"] += len(manifest.environment_variables)
        summary["by_sdk"].setdefault(manifest.sdk, []).append(manifest.template_name)
    return summary
