"""
Template Composition Engine HTTP 서버.

    uvicorn src.app.main:app --reload

default.yaml 구조:
    compose:  ComposeOptions 기본값 (요청 options가 덮어씀)
    paths:    logs_dir (리포트 저장 위치), manifest_cache_ttl_seconds
    logging:  level (src.* 로거)
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import yaml
from fastapi import FastAPI

from src.app.routes import compose
from src.compose.pipeline import Composer
from src.deps.peers import PeerDependencyAnalyzer
from src.templates.manager import ManifestStore

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG = PROJECT_ROOT / "default.yaml"

logger = logging.getLogger(__name__)


def load_config(config_path: Path | None = None) -> dict:
    """YAML 설정 로드. 파일이 없거나 비어 있으면 빈 dict."""
    path = config_path or DEFAULT_CONFIG
    if not path.is_file():
        return {}
    data: dict[Any, Any] | None = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def resolve_path(value: str | None, default: str) -> Path:
    """설정의 상대 경로는 프로젝트 루트 기준으로 푼다."""
    path = Path(value or default)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return path


def build_composer(config: dict) -> Composer:
    """요청 간에 공유할 Composer (매니페스트 캐시 포함)."""
    paths = config.get("paths") or {}
    store = ManifestStore(ttl_seconds=paths.get("manifest_cache_ttl_seconds"))
    return Composer(store=store, analyzer=PeerDependencyAnalyzer())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config = load_config()
    level = (config.get("logging") or {}).get("level")
    if level:
        logging.getLogger("src").setLevel(level)

    app.state.config = config
    app.state.logs_dir = resolve_path((config.get("paths") or {}).get("logs_dir"), "logs")
    app.state.composer = build_composer(config)
    logger.info(f"Compose server ready (reports: {app.state.logs_dir})")

    try:
        yield
    finally:
        app.state.composer.store.clear_cache()


app = FastAPI(
    title="Template Composition Engine",
    description="템플릿 선택 → 의존성 병합 + 파일 합성 + 설정 문서",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(compose.api_router, prefix="/api/compose", tags=["Compose API"])


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "message": app.title,
        "endpoints": {
            "compose": "/api/compose",
            "reports": "/api/compose/reports",
            "health": "/health",
        },
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.app.main:app", host="127.0.0.1", port=8000, reload=True)
