from __future__ import annotations

import dataclasses
import os
import shutil
import threading
import uuid
from typing import List, Optional, Tuple

from .config import EnvironmentConfig, PipelineConfig, load_environment
from .errors import ApplyError, InvalidRequest, PipelineError, RunCancelled
from .locks import EnvironmentLocks, default_locks
from .logging_utils import get_logger
from .models import (
    CredentialGrant,
    DeploymentOutcome,
    DeploymentRequest,
    OutcomeStatus,
    RunState,
    RunTracker,
    Variant,
)
from . import (
    dispatcher,
    gcp_auth,
    gcp_artifact_registry,
    gcp_cloud_run,
    gcp_gcs,
    github,
    terraform,
)


logger = get_logger(__name__)

# 도중에 끊기면 외부 리소스가 어중간한 상태로 남을 수 있는 단계
MUTATING_STAGES = frozenset({"apply", "publish", "deploy", "destroy"})

VARIANT_STAGES = {
    Variant.PRODUCTION: ["authenticate", "plan", "apply", "publish", "deploy"],
    Variant.VALIDATION: ["authenticate", "plan", "report"],
    Variant.SANDBOX: ["authenticate", "plan", "apply", "publish", "deploy", "health_check", "destroy"],
}


def _dispatch(cfg: PipelineConfig, request: DeploymentRequest) -> Variant:
    return dispatcher.dispatch(
        request,
        cfg.production_branch,
        sandbox_environment=cfg.sandbox_environment,
        production_environment=cfg.production_environment,
    )


def resolve_paths(cfg: PipelineConfig, base_dir: str) -> PipelineConfig:
    """
    terraform_dir / build_context 를 base_dir(-C) 기준 경로로 바꾼 설정 사본을 돌려준다.
    """
    return dataclasses.replace(
        cfg,
        terraform_dir=os.path.join(base_dir, cfg.terraform_dir),
        build_context=os.path.join(base_dir, cfg.build_context),
    )


def stages_for(variant: Variant, request: DeploymentRequest) -> List[str]:
    stages = list(VARIANT_STAGES[variant])
    if variant == Variant.SANDBOX and not request.destroy:
        stages.remove("destroy")
    return stages


class PipelineRun:
    """
    배포 요청 하나에 대한 실행 단위.

    단계는 항상 순서대로 하나씩 실행되며, 어떤 단계든 실패하면 그 자리에서 failed 로 끝난다.
    자동 재시도는 하지 않는다. 같은 환경의 plan->apply 구간과 destroy 는 환경 잠금 안에서만 실행한다.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        request: DeploymentRequest,
        *,
        base_dir: str = ".",
        locks: Optional[EnvironmentLocks] = None,
        cancel_event: Optional[threading.Event] = None,
        assertion: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.cfg = resolve_paths(cfg, base_dir)
        self.request = request
        self.base_dir = base_dir
        self.locks = locks or default_locks()
        self.cancel_event = cancel_event or threading.Event()
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.tracker = RunTracker()
        self._assertion = assertion
        self._in_flight: Optional[str] = None
        self._applied: Tuple[str, ...] = ()

    def cancel(self) -> None:
        logger.warning("취소 요청 수신: run=%s", self.run_id)
        self.cancel_event.set()

    def _checkpoint(self, next_stage: str) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled(f"'{next_stage}' 단계 시작 전에 취소되었습니다.", stage=next_stage)
        self._in_flight = next_stage
        logger.info("단계 시작: %s (run=%s env=%s)", next_stage, self.run_id, self.request.environment)

    def _done(self, state: RunState) -> None:
        self._in_flight = None
        self.tracker.advance(state)

    def _load_environment(self) -> EnvironmentConfig:
        try:
            return load_environment(self.cfg, self.request.environment, self.base_dir)
        except ValueError as e:
            raise InvalidRequest(str(e)) from e

    def _authenticate(self) -> CredentialGrant:
        if self._assertion is not None:
            return gcp_auth.exchange_credentials(self.cfg, self._assertion)
        return gcp_auth.authenticate(self.cfg)

    def execute(self) -> DeploymentOutcome:
        outcome = DeploymentOutcome(status=OutcomeStatus.FAILED, environment=self.request.environment)
        try:
            self._execute(outcome)
        except PipelineError as e:
            self._fail(outcome, e)
        outcome.final_state = self.tracker.state
        outcome.states = list(self.tracker.history)
        outcome.applied = self._applied
        return outcome

    def _execute(self, outcome: DeploymentOutcome) -> None:
        request = self.request
        lock_timeout = self.cfg.state_lock_timeout_seconds

        variant = _dispatch(self.cfg, request)
        outcome.variant = variant
        env_cfg = self._load_environment()

        self._checkpoint("authenticate")
        grant = self._authenticate()
        self._done(RunState.AUTHENTICATED)

        if variant == Variant.VALIDATION:
            self._checkpoint("plan")
            with self.locks.hold(env_cfg.name, holder=self.run_id, timeout=lock_timeout):
                plan = terraform.plan(self.cfg, env_cfg, grant)
            outcome.plan = plan
            self._done(RunState.PLANNED)
            self.tracker.advance(RunState.PLAN_ONLY)

            self._checkpoint("report")
            github.post_pr_comment(self.cfg, request.pr_number, github.format_plan_comment(plan))
            self._done(RunState.SUCCEEDED)
            outcome.status = OutcomeStatus.SUCCEEDED
            return

        # plan -> apply 는 하나의 잠금 구간
        self._checkpoint("plan")
        with self.locks.hold(env_cfg.name, holder=self.run_id, timeout=lock_timeout):
            plan = terraform.plan(self.cfg, env_cfg, grant)
            outcome.plan = plan
            self._done(RunState.PLANNED)

            self._checkpoint("apply")
            self._applied = terraform.apply(self.cfg, env_cfg, plan, grant, self.cancel_event)
            self._done(RunState.APPLIED)
        outcome.mutated = bool(self._applied)

        self._checkpoint("publish")
        outcome.image_ref = gcp_artifact_registry.publish_image(self.cfg, env_cfg, request.image_tag, grant)
        outcome.mutated = True
        self._done(RunState.PUBLISHED)

        self._checkpoint("deploy")
        outcome.url = gcp_cloud_run.deploy_service(self.cfg, env_cfg, outcome.image_ref, grant)
        self._done(RunState.DEPLOYED)

        if variant == Variant.SANDBOX:
            self._checkpoint("health_check")
            gcp_cloud_run.check_health(self.cfg, outcome.url)
            self._done(RunState.HEALTH_CHECKED)

            # teardown 은 헬스 체크가 끝난 뒤에만
            if request.destroy:
                self._checkpoint("destroy")
                with self.locks.hold(env_cfg.name, holder=self.run_id, timeout=lock_timeout):
                    outcome.destroyed = terraform.destroy(self.cfg, env_cfg, grant, self.cancel_event)
                self._done(RunState.DESTROYED)

        self.tracker.advance(RunState.SUCCEEDED)
        outcome.status = OutcomeStatus.SUCCEEDED

    def _fail(self, outcome: DeploymentOutcome, error: PipelineError) -> None:
        in_flight = self._in_flight
        cancelled_mid_stage = self.cancel_event.is_set() and in_flight in MUTATING_STAGES
        outcome.status = OutcomeStatus.FAILED
        outcome.error = error
        outcome.failed_stage = error.stage or in_flight
        outcome.partial = error.mutated or cancelled_mid_stage
        outcome.mutated = outcome.mutated or outcome.partial
        if isinstance(error, ApplyError) and error.stage == "destroy":
            outcome.destroyed = error.applied
            outcome.not_destroyed = error.not_applied
        elif isinstance(error, ApplyError):
            self._applied = error.applied
            outcome.not_applied = error.not_applied
        self._in_flight = None
        self.tracker.advance(RunState.FAILED)

        logger.error("run 실패: %s (partial=%s)", error.describe(), outcome.partial)
        if error.detail:
            logger.error("외부 도구 출력:\n%s", error.detail)

        if outcome.variant == Variant.VALIDATION and self.request.pr_number is not None:
            try:
                github.post_pr_comment(self.cfg, self.request.pr_number, github.format_failure_comment(outcome))
            except PipelineError as report_error:
                logger.warning("실패 내용을 PR 코멘트로 남기지 못했습니다: %s", report_error)


def execute_request(
    cfg: PipelineConfig,
    request: DeploymentRequest,
    *,
    base_dir: str = ".",
    locks: Optional[EnvironmentLocks] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DeploymentOutcome:
    return PipelineRun(cfg, request, base_dir=base_dir, locks=locks, cancel_event=cancel_event).execute()


def describe_run(cfg: PipelineConfig, request: DeploymentRequest) -> str:
    """
    요청이 어떤 variant 로 실행되고 어떤 단계들을 거치는지 요약한다.
    외부 호출은 하지 않는다.
    """
    variant = _dispatch(cfg, request)
    stages = stages_for(variant, request)

    lines: List[str] = []
    lines.append("# Pipeline plan")
    lines.append(f"- project: {cfg.gcp_project_id}")
    lines.append(f"- region: {cfg.gcp_region}")
    lines.append(f"- trigger: {request.trigger.value}")
    lines.append(f"- variant: {variant.value}")
    lines.append(f"- environment: {request.environment}")
    if request.ref:
        lines.append(f"- ref: {request.ref}")
    if request.pr_number is not None:
        lines.append(f"- pull request: #{request.pr_number} (base={request.base_ref or '?'})")
    if variant != Variant.VALIDATION:
        lines.append(f"- image: {gcp_artifact_registry.image_reference(cfg, request.image_tag or '?')}")
    if variant == Variant.SANDBOX:
        lines.append(f"- destroy after deploy: {request.destroy}")
    lines.append("")

    lines.append("## Stages")
    for name in VARIANT_STAGES[variant]:
        status = "RUN" if name in stages else "SKIPPED"
        lines.append(f"- {name}: {status}")

    return "\n".join(lines)


def skipped_outcome(reason: str) -> DeploymentOutcome:
    logger.info("run 건너뜀: %s", reason)
    return DeploymentOutcome(status=OutcomeStatus.SKIPPED)


def format_outcome(outcome: DeploymentOutcome) -> str:
    lines: List[str] = []
    lines.append("# Pipeline summary")
    lines.append(f"- status: {outcome.status.value}")
    if outcome.variant is not None:
        lines.append(f"- variant: {outcome.variant.value}")
    if outcome.environment:
        lines.append(f"- environment: {outcome.environment}")
    if outcome.states:
        lines.append(f"- states: {' -> '.join(s.value for s in outcome.states)}")
    if outcome.plan is not None:
        lines.append(f"- plan: {outcome.plan.summary()}")
    if outcome.image_ref:
        lines.append(f"- image: {outcome.image_ref}")
    if outcome.url:
        lines.append(f"- url: {outcome.url}")

    if outcome.error is not None:
        err = outcome.error
        lines.append("")
        lines.append("## Failure")
        lines.append(f"- stage: {outcome.failed_stage}")
        lines.append(f"- error: {err.kind}: {err.message}")
        lines.append(f"- exit status: {err.exit_status if err.exit_status is not None else '(none)'}")
        lines.append(f"- external mutation: {outcome.mutated}")
        lines.append(f"- partial: {outcome.partial}")

    if outcome.applied or outcome.not_applied:
        lines.append("")
        lines.append("## Applied resources")
        for addr in outcome.applied or ("(none)",):
            lines.append(f"- {addr}")
        lines.append("")
        lines.append("## Not applied resources")
        for addr in outcome.not_applied or ("(none)",):
            lines.append(f"- {addr}")

    if outcome.destroyed or outcome.not_destroyed:
        lines.append("")
        lines.append("## Destroyed resources")
        for addr in outcome.destroyed or ("(none)",):
            lines.append(f"- {addr}")
        lines.append("")
        lines.append("## Not destroyed resources")
        for addr in outcome.not_destroyed or ("(none)",):
            lines.append(f"- {addr}")

    return "\n".join(lines)


def check_all(cfg: PipelineConfig, env_cfg: EnvironmentConfig, base_dir: str = ".") -> tuple[str, bool]:
    """
    실제 리소스 변경 없이 실행 환경과 GCP 리소스 상태를 점검한다.

    Returns:
        summary: 사람이 읽기 좋은 텍스트 요약
        has_issues: 배포 전에 해결해야 할 크리티컬 이슈가 있는지 여부
    """
    lines: List[str] = []
    critical: List[str] = []

    lines.append("# Pipeline pre-check")
    lines.append(f"- project: {cfg.gcp_project_id}")
    lines.append(f"- environment: {env_cfg.name}")
    lines.append("")

    lines.append("## Tools")
    tools = ["terraform", "gcloud"]
    if cfg.build_mode == "local_docker":
        tools.append("docker")
    for tool in tools:
        found = shutil.which(tool)
        status = f"{tool}: {found}" if found else f"{tool}: 없음"
        lines.append(f"- {status}")
        if not found:
            critical.append(status)
    lines.append("")

    lines.append("## Terraform")
    tf_dir = os.path.join(base_dir, cfg.terraform_dir)
    if os.path.isdir(tf_dir):
        lines.append(f"- config dir: {tf_dir}")
    else:
        msg = f"Terraform 디렉토리 없음: {tf_dir}"
        lines.append(f"- {msg}")
        critical.append(msg)
    lines.append("")

    lines.append("## Workload Identity")
    if cfg.wif_provider.startswith("projects/") and "/providers/" in cfg.wif_provider:
        lines.append(f"- provider: {cfg.wif_provider}")
    else:
        msg = f"WIF_PROVIDER 형식이 올바르지 않습니다: {cfg.wif_provider}"
        lines.append(f"- {msg}")
        critical.append(msg)
    lines.append(f"- service account: {cfg.wif_service_account}")
    lines.append(f"- repository binding: {cfg.wif_repository}")
    lines.append("")

    lines.append("## Artifact Registry")
    ar_status = gcp_artifact_registry.check_repository(cfg)
    lines.append(f"- {ar_status}")
    if "없음" in ar_status or "확인 불가" in ar_status:
        critical.append(ar_status)
    lines.append("")

    lines.append("## State bucket")
    try:
        bucket_status = gcp_gcs.check_state_bucket(cfg, env_cfg)
    except Exception as e:  # noqa: BLE001
        bucket_status = f"State bucket: 체크 중 예외 발생: {e}"
    lines.append(f"- {bucket_status}")
    if "존재함" not in bucket_status:
        critical.append(bucket_status)
    lines.append("")

    lines.append("## Summary")
    if critical:
        lines.append("- 상태: 크리티컬 이슈가 있습니다. 배포 전 반드시 해결해야 합니다.")
        for issue in critical:
            lines.append(f"  - {issue}")
    else:
        lines.append("- 상태: 주요 이슈 없음 (배포 가능 상태로 보입니다)")

    return "\n".join(lines), bool(critical)
