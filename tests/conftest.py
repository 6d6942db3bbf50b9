"""
Pytest fixtures for the composition engine tests.

테스트 구성:
- 템플릿 폴더는 tmp_path 아래에 config.json + 파일로 생성
- 정상 케이스, 스키마 위반 케이스 분리
"""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from src.domain.schemas import Selection

# =============================================================================
# Path Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """프로젝트 루트 경로."""
    return Path(__file__).parent.parent


@pytest.fixture
def default_config_path(project_root: Path) -> Path:
    """default.yaml 경로."""
    return project_root / "default.yaml"


@pytest.fixture
def default_config(default_config_path: Path) -> dict:
    """기본 설정 로드."""
    with open(default_config_path, encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def templates_root(tmp_path: Path) -> Path:
    root = tmp_path / "templates"
    root.mkdir()
    return root


@pytest.fixture
def target_root(tmp_path: Path) -> Path:
    """합성 결과 프로젝트 루트 (아직 생성 안 됨)."""
    return tmp_path / "project"


# =============================================================================
# Template Fixtures
# =============================================================================

def base_config(**overrides: Any) -> dict[str, Any]:
    """최소 유효 config.json."""
    config: dict[str, Any] = {
        "name": "Sample",
        "description": "Sample template",
        "packages": [],
        "envVars": [],
        "files": {},
    }
    config.update(overrides)
    return config


TemplateFactory = Callable[..., Selection]


@pytest.fixture
def make_template(templates_root: Path) -> TemplateFactory:
    """
    템플릿 폴더 생성 factory.

    Usage:
        selection = make_template(
            "react", "basic",
            files={"README.md": "# {{projectName}}"},
            config={"packages": [{"name": "react", "version": "^18.2.0"}]},
        )

    files의 각 항목은 source → dest 동일 경로로 files 매핑에 추가됨
    (config에 files가 있으면 그대로 사용).
    """

    def _make(
        sdk: str,
        template_name: str = "basic",
        files: dict[str, str | bytes] | None = None,
        config: dict[str, Any] | None = None,
        raw_config: str | None = None,
    ) -> Selection:
        root = templates_root / sdk / template_name
        root.mkdir(parents=True, exist_ok=True)
        files = files or {}
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")

        if raw_config is not None:
            (root / "config.json").write_text(raw_config, encoding="utf-8")
        else:
            data = base_config(name=f"{sdk} {template_name}", **(config or {}))
            if "files" not in (config or {}):
                data["files"] = {rel: rel for rel in files}
            (root / "config.json").write_text(json.dumps(data), encoding="utf-8")

        return Selection(template_root=root, sdk=sdk, template_name=template_name)

    return _make


@pytest.fixture
def react_template(make_template: TemplateFactory) -> Selection:
    """react ^17 + README 충돌 대상."""
    return make_template(
        "react",
        files={
            "README.md": "# {{ projectName }} (react)\n",
            "src/App.tsx": "export const name = '{{projectName}}';\n",
        },
        config={
            "packages": [
                {"name": "react", "version": "^17.0.2"},
                {"name": "react-dom", "version": "^17.0.2"},
            ],
            "envVars": [
                {
                    "name": "NEXT_PUBLIC_APP_NAME",
                    "description": "Public app name",
                    "example": "demo",
                    "required": True,
                },
            ],
            "files": {"README.md": "README.md", "src/App.tsx": "src/App.tsx"},
            "setup": "Run the dev server.",
        },
    )


@pytest.fixture
def supabase_template(make_template: TemplateFactory) -> Selection:
    """react ^18 + README 충돌 + 환경 변수."""
    return make_template(
        "supabase",
        files={
            "README.md": "# {{ projectName }} (supabase)\n",
            "lib/supabase.ts": "export const url = process.env.SUPABASE_URL;\n",
        },
        config={
            "packages": [
                {"name": "react", "version": "^18.2.0"},
                {"name": "@supabase/supabase-js", "version": "^2.39.0"},
            ],
            "devPackages": [{"name": "typescript", "version": "^5.3.0"}],
            "envVars": [
                {
                    "name": "SUPABASE_URL",
                    "description": "Supabase project URL",
                    "example": "https://xyz.supabase.co",
                    "required": True,
                },
                {
                    "name": "SUPABASE_SERVICE_KEY",
                    "description": "Service role key",
                    "required": False,
                },
            ],
            "files": {"README.md": "README.md", "lib/supabase.ts": "lib/supabase.ts"},
            "usage": "Import the client from lib/supabase.ts.",
        },
    )
