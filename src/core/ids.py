"""
ID 생성: run_id

규칙:
- compose() 호출마다 새 run_id 발급
- 파일명으로 그대로 사용 가능 (ASCII, 공백 없음)
"""

import uuid
from datetime import UTC, datetime

from src.domain.constants import COMPOSE_RUN_ID_PREFIX


def generate_run_id() -> str:
    """
    Run ID 생성.

    고유성 보장: UUID v4
    포맷: COMPOSE-{timestamp}-{uuid[:8]}

    Returns:
        run_id 문자열
    """
    now = datetime.now(UTC)
    timestamp = now.strftime("%Y%m%d%H%M%S")
    unique = uuid.uuid4().hex[:8]

    return f"{COMPOSE_RUN_ID_PREFIX}{timestamp}-{unique}"

