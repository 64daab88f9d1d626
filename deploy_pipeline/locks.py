"""
locks
-----

환경별 상호 배제. 같은 환경에 대해 plan/apply(또는 destroy) 구간이 동시에 돌지 않게 한다.

프로세스 밖(다른 러너)과의 직렬화는 Terraform 의 GCS 상태 잠금(-lock-timeout)이 담당하고,
여기서는 한 프로세스 안에서 동시에 dispatch 된 run 들을 막는다.
대기는 유한하며(기본 20분), 넘기면 LockContentionError 로 실패한다.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .config import DEFAULT_STATE_LOCK_TIMEOUT_SECONDS
from .errors import LockContentionError
from .logging_utils import get_logger


logger = get_logger(__name__)


class EnvironmentLocks:
    def __init__(self, timeout_seconds: float = DEFAULT_STATE_LOCK_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, str] = {}

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(environment)
            if lock is None:
                lock = self._locks[environment] = threading.Lock()
            return lock

    def holder(self, environment: str) -> Optional[str]:
        with self._guard:
            return self._holders.get(environment)

    @contextmanager
    def hold(self, environment: str, *, holder: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout_seconds if timeout is None else timeout
        lock = self._lock_for(environment)

        current = self.holder(environment)
        if current is not None:
            logger.info("환경 잠금 대기: env=%s holder=%s (최대 %.0f초)", environment, current, wait)

        if not lock.acquire(timeout=wait):
            raise LockContentionError(
                f"환경 '{environment}' 잠금을 {wait:.0f}초 안에 얻지 못했습니다.",
                environment=environment,
                holder=self.holder(environment),
            )

        with self._guard:
            self._holders[environment] = holder
        logger.debug("환경 잠금 획득: env=%s holder=%s", environment, holder)
        try:
            yield
        finally:
            with self._guard:
                self._holders.pop(environment, None)
            lock.release()
            logger.debug("환경 잠금 해제: env=%s holder=%s", environment, holder)


_default_locks = EnvironmentLocks()


def default_locks() -> EnvironmentLocks:
    return _default_locks
