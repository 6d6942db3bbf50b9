"""
ConfigDocGenerator: .env.example + setup.md 통합 생성.

규칙:
- 환경 변수는 이름 기준 중복 제거, 처음 선언한 템플릿 섹션에 배치
- 같은 이름 + 다른 example/description → "Variable Conflicts (Review Required)"
  배너 아래 모든 선언을 나열 (자동 선택 안 함)
- required 변수는 marker 없음, optional 변수는 "# Optional"
- setup.md 템플릿 섹션은 "## <Sdk> Setup", 존재하는 필드만 렌더 (빈 heading 금지)
- 쓰기 실패 → GenerationFailed 즉시 전파
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from src.core.storage import atomic_write_text
from src.domain.constants import ENV_EXAMPLE_FILENAME, SETUP_DOC_FILENAME
from src.domain.errors import ErrorCodes, GenerationFailed
from src.domain.schemas import GeneratedDocs, ProjectInfo, TemplateManifest

logger = logging.getLogger(__name__)


@dataclass
class _EnvEntry:
    name: str
    value: str
    description: str
    required: bool
    template: str
    others: list[tuple[str, str, str]] = field(default_factory=list)  # (template, value, description)


def sdk_heading(sdk: str) -> str:
    return sdk[:1].upper() + sdk[1:]


# =============================================================================
# .env.example
# =============================================================================

def collect_env_vars(manifests: Sequence[TemplateManifest]) -> list[_EnvEntry]:
    """이름 기준 중복 제거 (선언 순서 유지), 차이 나는 재선언은 others에 기록."""
    entries: dict[str, _EnvEntry] = {}
    for manifest in manifests:
        for spec in manifest.environment_variables:
            existing = entries.get(spec.name)
            if existing is None:
                entries[spec.name] = _EnvEntry(
                    name=spec.name,
                    value=spec.example_value,
                    description=spec.description,
                    required=spec.required,
                    template=manifest.template_id,
                )
                continue
            if (existing.value, existing.description) != (
                spec.example_value,
                spec.description,
            ):
                existing.others.append(
                    (manifest.template_id, spec.example_value, spec.description)
                )
    return list(entries.values())


def render_env_example(entries: Sequence[_EnvEntry], project: ProjectInfo) -> str:
    lines = [
        f"# Environment Variables for {project.name}",
        "# Copy this file to .env and fill in your actual values",
        "",
    ]

    regular = [e for e in entries if not e.others]
    conflicted = [e for e in entries if e.others]

    by_template: dict[str, list[_EnvEntry]] = {}
    for entry in regular:
        by_template.setdefault(entry.template, []).append(entry)

    for template, group in by_template.items():
        lines.append(f"# {template} Configuration")
        for entry in group:
            if entry.description:
                lines.append(f"# {entry.description}")
            if not entry.required:
                lines.append("# Optional")
            lines.append(f"{entry.name}={entry.value}")
            lines.append("")

    if conflicted:
        lines.append("# Variable Conflicts (Review Required)")
        lines.append("# The following variables have different values across templates:")
        for entry in conflicted:
            lines.append(f"# {entry.name}:")
            lines.append(f'#   {entry.template}: "{entry.value}" - {entry.description}')
            for template, value, description in entry.others:
                lines.append(f'#   {template}: "{value}" - {description}')
            if not entry.required:
                lines.append("# Optional")
            lines.append(f"{entry.name}={entry.value}")
            lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


# =============================================================================
# setup.md
# =============================================================================

def render_template_section(manifest: TemplateManifest) -> str:
    """
    템플릿 1개 섹션.

    존재하는 문서 필드만 포함, 없으면 heading 자체를 생략.
    """
    docs = manifest.documentation
    title = sdk_heading(manifest.sdk)
    parts = [f"## {title} Setup", ""]
    if manifest.description:
        parts += [manifest.description, ""]

    for heading, body in (
        ("Setup Instructions", docs.setup),
        ("Installation", docs.installation),
        ("Configuration", docs.configuration),
    ):
        if body:
            parts += [f"### {heading}", "", body.strip(), ""]

    required = [v for v in manifest.environment_variables if v.required]
    if required:
        parts += ["### Required Environment Variables", ""]
        parts += [
            f"- `{v.name}`: {v.description or 'No description provided'}"
            for v in required
        ]
        parts.append("")

    for heading, body in (("Usage", docs.usage), ("Troubleshooting", docs.troubleshooting)):
        if body:
            parts += [f"### {heading}", "", body.strip(), ""]

    if docs.examples:
        parts += [f"### {title} Examples", ""]
        for index, example in enumerate(docs.examples, start=1):
            parts += [f"#### Example {index}: {example.title}", ""]
            if example.description:
                parts += [example.description, ""]
            parts += [f"```{example.language}", example.code.rstrip("\n"), "```", ""]

    return "\n".join(parts)


def render_setup_doc(
    manifests: Sequence[TemplateManifest], project: ProjectInfo
) -> tuple[str, list[str]]:
    """setup.md 본문 + 템플릿 섹션 이름 목록."""
    pm = project.package_manager
    header = [f"# {project.name} Setup Guide", ""]
    if project.description:
        header += [project.description, ""]
    header += [
        "This guide will help you set up and configure your project with all "
        "the integrated SDKs and templates.",
        "",
        "## Installation",
        "",
        "```bash",
        f"{pm} install",
        "```",
        "",
        "## Configuration",
        "",
        "Copy the example environment file and configure your settings:",
        "",
        "```bash",
        f"cp {ENV_EXAMPLE_FILENAME} .env",
        "```",
        "",
    ]
    sections: list[str] = []
    body = "\n".join(header)
    for manifest in manifests:
        body += "\n" + render_template_section(manifest)
        sections.append(manifest.template_id)
    return body.rstrip("\n") + "\n", sections


# =============================================================================
# Generator
# =============================================================================

class ConfigDocGenerator:
    """통합 설정 문서 생성기."""

    def generate(
        self,
        manifests: Sequence[TemplateManifest],
        target_root: Path,
        project_info: ProjectInfo | None = None,
    ) -> GeneratedDocs:
        """
        .env.example + setup.md 생성.

        Args:
            manifests: 선택 순서대로의 매니페스트
            target_root: 대상 프로젝트 루트
            project_info: 프로젝트 이름/설명

        Returns:
            GeneratedDocs

        Raises:
            GenerationFailed: 파일 쓰기 실패
        """
        project = project_info or ProjectInfo()
        target_root = Path(target_root)
        env_path = target_root / ENV_EXAMPLE_FILENAME
        setup_path = target_root / SETUP_DOC_FILENAME

        entries = collect_env_vars(manifests)
        env_content = render_env_example(entries, project)
        setup_content, sections = render_setup_doc(manifests, project)

        for path, content in ((env_path, env_content), (setup_path, setup_content)):
            try:
                atomic_write_text(path, content)
            except OSError as e:
                raise GenerationFailed(
                    ErrorCodes.GENERATION_FAILED,
                    f"Failed to generate {path.name}: {e}",
                    path=str(path),
                ) from e

        conflicts = [e.name for e in entries if e.others]
        if conflicts:
            logger.warning(f"Environment variable conflicts need review: {conflicts}")

        return GeneratedDocs(
            env_file=env_path,
            setup_doc=setup_path,
            variable_count=len(entries),
            env_conflicts=conflicts,
            sections=sections,
        )
