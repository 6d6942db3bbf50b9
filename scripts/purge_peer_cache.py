#!/usr/bin/env python3
"""
purge_peer_cache.py - peer dependency offline 캐시 정리 스크립트

default.yaml의 compose 설정에 따라:
1. cache_ttl_seconds 초과 엔트리 정리 (기본)
2. --all: 캐시 파일 전체 삭제

캐시 파일: {offline_cache_path}/package-cache.json
저장 중인 compose 실행과 같은 FileLock을 사용하므로 실행 중에도 안전.

사용법:
    # 기본 실행 (dry-run)
    python scripts/purge_peer_cache.py

    # 실제 정리
    python scripts/purge_peer_cache.py --execute

    # 전체 삭제
    python scripts/purge_peer_cache.py --all --execute

    # cron 예시 (매일 새벽 3시)
    0 3 * * * cd /path/to/project && python scripts/purge_peer_cache.py --execute >> /var/log/purge_peer_cache.log 2>&1
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import yaml
from filelock import Timeout

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.deps.cache import PeerCache
from src.domain.constants import DEFAULT_CACHE_TTL_SECONDS, PEER_CACHE_FILENAME

# 로깅 설정
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent


@dataclass
class CacheConfig:
    """offline 캐시 설정."""
    cache_dir: Path
    ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS


@dataclass
class PurgeResult:
    """Purge 결과."""
    cache_file: Path
    existed: bool = False
    purged_entries: int = 0
    removed_file: bool = False


def load_cache_config(config_path: Path, cache_dir: str | None = None) -> CacheConfig:
    """default.yaml에서 캐시 설정 로드 (cache_dir 인자가 우선)."""
    compose: dict = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            compose = (yaml.safe_load(f) or {}).get("compose", {}) or {}

    directory = Path(cache_dir or compose.get("offline_cache_path") or ".cache/compose")
    if not directory.is_absolute():
        directory = PROJECT_ROOT / directory

    return CacheConfig(
        cache_dir=directory,
        ttl_seconds=compose.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS),
    )


def purge_cache(config: CacheConfig, execute: bool, purge_all: bool) -> PurgeResult:
    """캐시 정리 실행 (execute=False면 개수만 계산)."""
    cache = PeerCache(config.cache_dir / PEER_CACHE_FILENAME, ttl_seconds=config.ttl_seconds)
    result = PurgeResult(cache_file=cache.path)

    if not cache.path.exists():
        logger.info(f"캐시 파일 없음: {cache.path}")
        return result
    result.existed = True

    if purge_all:
        if execute:
            cache.clear()
            logger.info(f"삭제됨: {cache.path}")
        else:
            logger.info(f"[DRY-RUN] 삭제 예정: {cache.path}")
        result.removed_file = True
        return result

    result.purged_entries = cache.purge_expired(dry_run=not execute)
    prefix = "" if execute else "[DRY-RUN] "
    logger.info(f"{prefix}만료 엔트리 {result.purged_entries}개 정리 (TTL {config.ttl_seconds}s)")
    return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="peer dependency offline 캐시 정리 스크립트",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="실제 정리 실행 (기본: dry-run)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="만료 여부와 관계없이 캐시 전체 삭제",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default=None,
        help="캐시 디렉터리 (기본: default.yaml compose.offline_cache_path)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="default.yaml",
        help="설정 파일 경로 (기본: default.yaml)",
    )

    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = PROJECT_ROOT / config_path

    config = load_cache_config(config_path, args.cache_dir)

    if not args.execute:
        logger.info("=" * 50)
        logger.info("DRY-RUN 모드 (실제 삭제 없음)")
        logger.info("실제 실행: --execute 옵션 추가")
        logger.info("=" * 50)

    try:
        result = purge_cache(config, execute=args.execute, purge_all=args.all)
    except Timeout:
        logger.error(f"캐시 락 획득 실패 (다른 실행이 사용 중): {config.cache_dir}")
        return 1

    logger.info("=" * 50)
    logger.info("Purge 결과:")
    logger.info(f"  캐시: {result.cache_file} ({'있음' if result.existed else '없음'})")
    if args.all:
        logger.info(f"  파일 삭제: {result.removed_file}")
    else:
        logger.info(f"  만료 엔트리: {result.purged_entries}")

    return 0


if __name__ == "__main__":
    exit(main())
