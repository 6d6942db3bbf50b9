"""
재시도 로직 유틸리티.

레지스트리 조회와 패키지 설치가 공유하는 백오프 규칙:
    n번째 실패 후 대기 = initial_delay * base ** (n - 1), max_delay 상한

레지스트리 조회(deps/peers.py)는 시도마다 다른 분기를 타므로
compute_backoff_delay만 가져다 쓰고, 설치(compose/install.py)는
retry_with_exponential_backoff로 시도 루프 전체를 맡긴다.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """재시도 간격 설정."""

    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    def delay_after(self, failures: int) -> float:
        if failures < 1:
            return 0.0
        raw = self.initial_delay * self.exponential_base ** (failures - 1)
        return min(raw, self.max_delay)


def compute_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> float:
    """attempt번째(1부터) 실패 직후 대기 시간(초)."""
    return BackoffPolicy(initial_delay, max_delay, exponential_base).delay_after(attempt)


async def retry_with_exponential_backoff(
    func: Callable[..., Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    func를 최대 max_retries + 1번 호출한다.

    exceptions에 속한 예외만 재시도 대상이며, 그 밖의 예외는
    대기 없이 그대로 올라간다. 마지막 시도의 예외는 다시 raise.
    """
    policy = BackoffPolicy(initial_delay, max_delay, exponential_base)
    total = max_retries + 1
    failures = 0

    while True:
        try:
            value = await func(*args, **kwargs)
        except exceptions as e:
            failures += 1
            if failures >= total:
                logger.error(f"Giving up after {total} attempts: {e}")
                raise
            wait = policy.delay_after(failures)
            logger.warning(
                f"Attempt {failures}/{total} failed ({type(e).__name__}: {e}); "
                f"next try in {wait:.1f}s"
            )
            await asyncio.sleep(wait)
            continue

        if failures:
            logger.info(f"Recovered on attempt {failures + 1}/{total}")
        return value


# =============================================================================
# 분류용 예외
# =============================================================================

class _ClassifiedError(Exception):
    """payload에 실패 분류 결과를 싣는 예외."""

    def __init__(self, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class RetryableError(_ClassifiedError):
    """다시 시도하면 성공할 수 있는 실패."""


class NonRetryableError(_ClassifiedError):
    """즉시 포기해야 하는 실패."""
