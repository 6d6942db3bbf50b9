"""
Compose Routes: 템플릿 합성 API.

- POST /api/compose → 합성 실행, CompositionReport 반환
- GET /api/compose/reports → 저장된 리포트 목록 (최신순)
- GET /api/compose/reports/<run_id> → 리포트 상세

요청 본문 (JSON):
    {
        "selections": [{"template_root": "...", "sdk": "...", "template_name": "..."}],
        "target_root": "/path/to/project",
        "strategy": "smart",
        "variables": {"projectName": "demo"},
        "options": {"enable_peer_analysis": true, "offline": true},
        "project": {"name": "demo", "description": "..."},
        "save_report": true
    }
"""

import logging
import re
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from src.core.logging import list_reports, load_report, save_report
from src.domain.errors import InvalidStrategy
from src.domain.schemas import ComposeOptions, ProjectInfo, Selection

logger = logging.getLogger(__name__)

api_router = APIRouter()  # API endpoints

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def _bad_request(message: str) -> HTTPException:
    return HTTPException(
        status_code=400, detail={"code": "INVALID_REQUEST", "message": message}
    )


def parse_selections(raw: Any) -> list[Selection]:
    """요청 selections → Selection 목록."""
    if not isinstance(raw, list):
        raise _bad_request("selections must be a list")
    selections = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise _bad_request(f"selections[{i}] must be an object")
        try:
            selections.append(Selection.from_dict(item))
        except (KeyError, TypeError) as e:
            raise _bad_request(f"selections[{i}] is missing {e}") from e
    return selections


@api_router.post("")
async def compose_project(
    request: Request,
    body: dict[str, Any] = Body(...),
) -> dict[str, Any]:
    """
    템플릿 합성 실행.

    빈 선택 / 쓰기 불가 target은 status=failed 리포트로 반환 (200).
    잘못된 요청 / 전략 이름은 400.
    """
    config = request.app.state.config
    selections = parse_selections(body.get("selections", []))

    target_root = body.get("target_root")
    if not isinstance(target_root, str) or not target_root:
        raise _bad_request("target_root is required")

    raw_options = body.get("options") or {}
    if not isinstance(raw_options, dict):
        raise _bad_request("options must be an object")
    options = ComposeOptions.from_config(config, **raw_options)

    compose_config = config.get("compose", {}) or {}
    strategy = body.get("strategy") or compose_config.get("strategy", "smart")
    variables = {str(k): str(v) for k, v in (body.get("variables") or {}).items()}
    project_info = ProjectInfo.from_dict(body.get("project"))

    composer = request.app.state.composer
    try:
        report = await composer.compose(
            selections,
            Path(target_root),
            strategy=strategy,
            variables=variables,
            options=options,
            project_info=project_info,
        )
    except InvalidStrategy as e:
        raise HTTPException(
            status_code=400, detail={"code": e.code, "message": e.message}
        ) from e

    if body.get("save_report", True):
        path = save_report(report, request.app.state.logs_dir)
        logger.info(f"Report saved: {path}")

    return report.to_dict()


@api_router.get("/reports")
async def list_compose_reports(request: Request) -> dict[str, Any]:
    """저장된 리포트 목록."""
    reports = list_reports(request.app.state.logs_dir)
    return {
        "reports": [p.stem.removeprefix("compose_") for p in reports],
        "count": len(reports),
    }


@api_router.get("/reports/{run_id}")
async def get_compose_report(request: Request, run_id: str) -> dict[str, Any]:
    """리포트 상세."""
    path = request.app.state.logs_dir / f"compose_{run_id}.json"
    if not RUN_ID_PATTERN.match(run_id) or not path.exists():
        raise HTTPException(
            status_code=404,
            detail={"code": "REPORT_NOT_FOUND", "message": f"Report '{run_id}' not found"},
        )
    return load_report(path)
