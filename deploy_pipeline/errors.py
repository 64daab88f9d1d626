"""
errors
------

파이프라인 단계별 예외 정의.

모든 예외는 실행 중인 run 을 즉시 종료시키며(자동 재시도 없음),
다음 정보를 반드시 함께 가진다.

- stage: 실패한 단계 이름 (dispatch, authenticate, plan, apply, ...)
- exit_status: 외부 도구의 종료 코드 (없으면 None)
- detail: 외부 도구가 남긴 메시지/출력
- mutated: 실패 시점까지 외부 리소스 변경이 이미 일어났는지 여부
"""

from __future__ import annotations

from typing import Optional, Sequence


class PipelineError(RuntimeError):
    """파이프라인 예외의 공통 부모."""

    default_stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        exit_status: Optional[int] = None,
        detail: str = "",
        mutated: bool = False,
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.exit_status = exit_status
        self.detail = detail
        self.mutated = mutated
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        parts = [f"[{self.stage}] {self.kind}: {self.message}"]
        if self.exit_status is not None:
            parts.append(f"exit={self.exit_status}")
        parts.append(f"mutated={self.mutated}")
        return " | ".join(parts)


class InvalidRequest(PipelineError):
    default_stage = "dispatch"


class AuthenticationError(PipelineError):
    default_stage = "authenticate"


class ValidationError(PipelineError):
    """terraform fmt/validate 실패. 재시도 대상이 아니며 출력 그대로 노출한다."""

    default_stage = "plan"


class ApplyError(PipelineError):
    """
    terraform apply 실패.

    부분 적용은 정상적으로 있을 수 있는 종료 상태이므로,
    어떤 리소스가 적용되었고 어떤 리소스가 적용되지 않았는지를 같이 보고한다.
    """

    default_stage = "apply"

    def __init__(
        self,
        message: str,
        *,
        applied: Sequence[str] = (),
        not_applied: Sequence[str] = (),
        stage: Optional[str] = None,
        exit_status: Optional[int] = None,
        detail: str = "",
    ) -> None:
        self.applied = tuple(applied)
        self.not_applied = tuple(not_applied)
        super().__init__(
            message,
            stage=stage,
            exit_status=exit_status,
            detail=detail,
            mutated=bool(self.applied),
        )


class BuildError(PipelineError):
    default_stage = "build"


class PublishError(PipelineError):
    default_stage = "publish"


class DeployError(PipelineError):
    default_stage = "deploy"


class LockContentionError(PipelineError):
    """
    환경 상태 잠금 획득 실패.

    lock_id 가 있으면 만료되지 않은(stale) Terraform 잠금이므로
    운영자가 직접 `terraform force-unlock` 해야 한다.
    """

    default_stage = "lock"

    def __init__(
        self,
        message: str,
        *,
        environment: str,
        holder: Optional[str] = None,
        lock_id: Optional[str] = None,
        stage: Optional[str] = None,
        exit_status: Optional[int] = None,
        detail: str = "",
    ) -> None:
        self.environment = environment
        self.holder = holder
        self.lock_id = lock_id
        super().__init__(message, stage=stage, exit_status=exit_status, detail=detail)

    @property
    def requires_manual_unlock(self) -> bool:
        return self.lock_id is not None


class ReportError(PipelineError):
    default_stage = "report"


class RunCancelled(PipelineError):
    """외부 취소 요청. 변경 단계 도중 취소되면 mutated=True 로 보고한다."""

    default_stage = "cancel"
