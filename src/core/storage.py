"""
원자적 파일 쓰기: 생성 파일, peer 캐시, 리포트 저장.

규칙:
- 중간 상태 없음: 같은 디렉토리 temp → rename
- 가능한 환경에서 내구성 강화: 파일 fsync + 디렉토리 fsync
- fsync 실패 시 경고 남기고 계속 진행
- 실패 시 temp 파일 삭제, 기존 파일 보존
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _fsync_dir(dir_path: Path) -> None:
    """
    디렉토리 fsync (가능한 환경에서).

    Args:
        dir_path: fsync할 디렉토리 경로
    """
    try:
        dir_fd = os.open(str(dir_path), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, AttributeError) as e:
        # O_DIRECTORY 미지원, 권한 문제 등
        logger.warning(
            f"Directory fsync failed for {dir_path}: {e}. "
            f"Rename durability may not be guaranteed."
        )


def atomic_write_bytes(
    path: Path,
    data: bytes,
    mode_from: Path | None = None,
    durable: bool = False,
) -> None:
    """
    원자적 바이트 쓰기.

    Args:
        path: 저장할 파일 경로
        data: 파일 내용
        mode_from: 권한 비트를 복사할 원본 파일 (실행 비트 보존)
        durable: True면 파일/디렉토리 fsync

    Raises:
        OSError: 쓰기/rename 실패 (temp 파일은 정리됨)
    """
    dir_path = path.parent
    dir_path.mkdir(parents=True, exist_ok=True)

    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=dir_path,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            temp_path = Path(f.name)
            f.write(data)
            f.flush()
            if durable:
                try:
                    os.fsync(f.fileno())
                except OSError as e:
                    logger.warning(f"File fsync failed for {path}: {e}")

        if mode_from is not None:
            shutil.copymode(mode_from, temp_path)
        else:
            # NamedTemporaryFile은 0o600 → 일반 파일 권한으로
            os.chmod(temp_path, 0o644)

        os.replace(temp_path, path)  # 원자적

        if durable:
            _fsync_dir(dir_path)

    except BaseException:
        if temp_path and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as cleanup_error:
                logger.warning(f"Temp file cleanup failed for {temp_path}: {cleanup_error}")
        raise


def atomic_write_text(path: Path, text: str, mode_from: Path | None = None) -> None:
    """UTF-8 텍스트 원자적 쓰기."""
    atomic_write_bytes(path, text.encode("utf-8"), mode_from=mode_from)


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """
    원자적 JSON 쓰기 (fsync 포함).

    Args:
        path: 저장할 파일 경로
        data: JSON 직렬화할 데이터
    """
    payload = json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
    atomic_write_bytes(path, payload, durable=True)


def load_json(path: Path) -> dict[str, Any]:
    """
    JSON 파일 로드.

    Raises:
        json.JSONDecodeError: 파싱 실패
        OSError: 읽기 실패
    """
    data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    return data
