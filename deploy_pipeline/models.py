"""
models
------

파이프라인 run 이 주고받는 값 객체와 run 상태 머신.

run 상태 흐름:
  dispatched -> authenticated -> planned -> (applied | plan_only)
  -> published -> deployed -> [health_checked -> destroyed] -> succeeded

어느 단계에서든 실패하면 곧바로 failed 로 가며, 한 번 지난 단계로는 돌아가지 않는다.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

from .errors import PipelineError


class TriggerKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


class Variant(str, enum.Enum):
    PRODUCTION = "production"
    VALIDATION = "validation"
    SANDBOX = "sandbox"


class RunState(str, enum.Enum):
    DISPATCHED = "dispatched"
    AUTHENTICATED = "authenticated"
    PLANNED = "planned"
    APPLIED = "applied"
    PLAN_ONLY = "plan_only"
    PUBLISHED = "published"
    DEPLOYED = "deployed"
    HEALTH_CHECKED = "health_checked"
    DESTROYED = "destroyed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutcomeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({RunState.SUCCEEDED, RunState.FAILED})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        RunState.DISPATCHED: frozenset({RunState.AUTHENTICATED, RunState.FAILED}),
        RunState.AUTHENTICATED: frozenset({RunState.PLANNED, RunState.FAILED}),
        RunState.PLANNED: frozenset({RunState.APPLIED, RunState.PLAN_ONLY, RunState.FAILED}),
        RunState.PLAN_ONLY: frozenset({RunState.SUCCEEDED, RunState.FAILED}),
        RunState.APPLIED: frozenset({RunState.PUBLISHED, RunState.FAILED}),
        RunState.PUBLISHED: frozenset({RunState.DEPLOYED, RunState.FAILED}),
        RunState.DEPLOYED: frozenset({RunState.HEALTH_CHECKED, RunState.SUCCEEDED, RunState.FAILED}),
        RunState.HEALTH_CHECKED: frozenset({RunState.DESTROYED, RunState.SUCCEEDED, RunState.FAILED}),
        RunState.DESTROYED: frozenset({RunState.SUCCEEDED, RunState.FAILED}),
        RunState.SUCCEEDED: frozenset(),
        RunState.FAILED: frozenset(),
    }
)


class InvalidStateTransition(ValueError):
    """허용되지 않은 상태 전이."""

    def __init__(self, from_state: RunState, to_state: RunState) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"invalid state transition: {from_state.value!r} -> {to_state.value!r}")


@dataclass(frozen=True)
class DeploymentRequest:
    trigger: TriggerKind
    environment: str
    ref: str = ""
    version: Optional[str] = None
    destroy: Optional[bool] = None
    pr_number: Optional[int] = None
    base_ref: Optional[str] = None
    commit_sha: Optional[str] = None

    @property
    def image_tag(self) -> Optional[str]:
        if self.version:
            return self.version
        if self.commit_sha:
            return self.commit_sha[:12]
        return None


@dataclass(frozen=True)
class CredentialGrant:
    """
    하나의 서비스 계정으로 범위가 제한된 단기 액세스 토큰.
    run 메모리 안에서만 살아 있고 어디에도 저장하지 않는다.
    """

    access_token: str = field(repr=False)
    service_account: str
    expires_at: datetime
    repository: str

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def subprocess_env(self, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        gcloud(CLOUDSDK_AUTH_ACCESS_TOKEN) 와 Terraform google provider(GOOGLE_OAUTH_ACCESS_TOKEN) 가
        이 토큰을 쓰도록 환경변수를 구성한다.
        """
        env = dict(base or {})
        env["CLOUDSDK_AUTH_ACCESS_TOKEN"] = self.access_token
        env["GOOGLE_OAUTH_ACCESS_TOKEN"] = self.access_token
        return env


@dataclass(frozen=True)
class ResourceChange:
    address: str
    action: str  # create | update | destroy | replace


@dataclass(frozen=True)
class PlanResult:
    environment: str
    changes: Tuple[ResourceChange, ...]
    diff: str
    plan_file: str = field(default="", compare=False)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def count(self, action: str) -> int:
        return sum(1 for c in self.changes if c.action == action)

    def summary(self) -> str:
        replaced = self.count("replace")
        return (
            f"{self.count('create') + replaced} to add, "
            f"{self.count('update')} to change, "
            f"{self.count('destroy') + replaced} to destroy"
        )


@dataclass
class DeploymentOutcome:
    status: OutcomeStatus
    environment: Optional[str] = None
    variant: Optional[Variant] = None
    final_state: Optional[RunState] = None
    states: List[RunState] = field(default_factory=list)
    image_ref: Optional[str] = None
    url: Optional[str] = None
    plan: Optional[PlanResult] = None
    error: Optional[PipelineError] = None
    failed_stage: Optional[str] = None
    mutated: bool = False
    partial: bool = False
    applied: Tuple[str, ...] = ()
    not_applied: Tuple[str, ...] = ()
    # sandbox teardown 결과. apply 결과와 섞지 않는다.
    destroyed: Tuple[str, ...] = ()
    not_destroyed: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status != OutcomeStatus.FAILED


class RunTracker:
    """
    run 하나의 상태 전이를 기록한다. 전이표에 없는 이동은 InvalidStateTransition.
    """

    def __init__(self) -> None:
        self.state = RunState.DISPATCHED
        self.history: List[RunState] = [RunState.DISPATCHED]

    def advance(self, to_state: RunState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state, to_state)
        self.state = to_state
        self.history.append(to_state)

    def reached(self, state: RunState) -> bool:
        return state in self.history

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES
