"""
terraform
---------

Terraform CLI 래퍼. Infrastructure Planner / Applier 역할.

- plan   : init -> fmt -check -> validate -> plan -out -> show -json / show
- apply  : 저장된 plan 파일을 apply (-json 로그를 파싱해 적용된 리소스 추적)
- destroy: 샌드박스 환경 정리용 apply -destroy

상태 잠금 충돌(Error acquiring the state lock)은 LockContentionError 로 바꿔서
운영자가 `terraform force-unlock` 할 수 있도록 잠금 ID 를 함께 보고한다.
"""

from __future__ import annotations

import json
import os
import re
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import EnvironmentConfig, PipelineConfig
from .errors import ApplyError, LockContentionError, RunCancelled, ValidationError
from .logging_utils import get_logger
from .models import CredentialGrant, PlanResult, ResourceChange
from .subprocess_utils import CommandCancelled, CommandError, RunResult, run_command


logger = get_logger(__name__)

_LOCK_ERROR_MARKER = "Error acquiring the state lock"
_LOCK_ID_PATTERN = re.compile(r"ID:\s+([0-9A-Za-z-]+)")

# terraform plan JSON 의 actions -> 파이프라인 액션 이름
_ACTION_MAP = {
    ("create",): "create",
    ("update",): "update",
    ("delete",): "destroy",
    ("delete", "create"): "replace",
    ("create", "delete"): "replace",
}


def _run(
    cmd: Sequence[str],
    *,
    cwd: str,
    env: Mapping[str, str],
    timeout: float,
    stream_output: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> RunResult:
    return run_command(
        cmd,
        cwd=cwd,
        env=env,
        timeout=timeout,
        stream_output=stream_output,
        cancel_event=cancel_event,
        progress_message=" ".join(cmd[:2]),
    )


def plan_file_name(env_cfg: EnvironmentConfig) -> str:
    return f"{env_cfg.name}.tfplan"


def _command_env(env_cfg: EnvironmentConfig, grant: CredentialGrant) -> Dict[str, str]:
    env = grant.subprocess_env(dict(os.environ))
    env["TF_IN_AUTOMATION"] = "1"
    # 환경별로 .terraform 디렉토리를 분리해서 서로 다른 backend 설정이 섞이지 않게 한다.
    env["TF_DATA_DIR"] = f".terraform-{env_cfg.name}"
    env.update(env_cfg.terraform_env())
    return env


def _lock_timeout_arg(cfg: PipelineConfig) -> str:
    return f"-lock-timeout={int(cfg.state_lock_timeout_seconds)}s"


def _raise_if_lock_error(e: CommandError, env_cfg: EnvironmentConfig, stage: str) -> None:
    if _LOCK_ERROR_MARKER not in e.output:
        return
    match = _LOCK_ID_PATTERN.search(e.output)
    lock_id = match.group(1) if match else None
    remedy = f" 잠금이 남아 있다면 `terraform force-unlock {lock_id}` 로 직접 해제해야 합니다." if lock_id else ""
    raise LockContentionError(
        f"환경 '{env_cfg.name}' 의 Terraform 상태 잠금을 얻지 못했습니다.{remedy}",
        environment=env_cfg.name,
        lock_id=lock_id,
        stage=stage,
        exit_status=e.returncode,
        detail=e.output,
    ) from e


def init(cfg: PipelineConfig, env_cfg: EnvironmentConfig, grant: CredentialGrant) -> None:
    cmd = [
        "terraform",
        "init",
        "-input=false",
        "-reconfigure",
        f"-backend-config=bucket={env_cfg.state_bucket}",
        f"-backend-config=prefix={env_cfg.state_prefix}",
    ]
    try:
        _run(cmd, cwd=cfg.terraform_dir, env=_command_env(env_cfg, grant), timeout=cfg.command_timeout_seconds)
    except CommandError as e:
        raise ValidationError(
            f"terraform init 실패 (env={env_cfg.name})",
            exit_status=e.returncode,
            detail=e.output or str(e),
        ) from e


def validate(cfg: PipelineConfig, env_cfg: EnvironmentConfig, grant: CredentialGrant) -> None:
    """
    fmt/validate 실패는 재시도 대상이 아니며, 도구 출력을 그대로 detail 에 담는다.
    """
    env = _command_env(env_cfg, grant)
    checks = [
        (["terraform", "fmt", "-check", "-recursive", "-no-color"], "terraform fmt 검사 실패"),
        (["terraform", "validate", "-no-color"], "terraform validate 실패"),
    ]
    for cmd, message in checks:
        try:
            _run(cmd, cwd=cfg.terraform_dir, env=env, timeout=cfg.command_timeout_seconds)
        except CommandError as e:
            raise ValidationError(message, exit_status=e.returncode, detail=e.output or str(e)) from e


def parse_plan_changes(plan_json: Mapping[str, Any]) -> Tuple[ResourceChange, ...]:
    """
    `terraform show -json` 결과에서 실제 변경만 순서대로 뽑는다. (no-op, read 제외)
    """
    changes: List[ResourceChange] = []
    for rc in plan_json.get("resource_changes") or []:
        actions = tuple((rc.get("change") or {}).get("actions") or ())
        action = _ACTION_MAP.get(actions)
        if action is None:
            continue
        changes.append(ResourceChange(address=rc["address"], action=action))
    return tuple(changes)


def plan(cfg: PipelineConfig, env_cfg: EnvironmentConfig, grant: CredentialGrant) -> PlanResult:
    """
    변경 계획을 계산한다. 원격 상태와 설정이 그대로면 같은 PlanResult 가 나온다.
    """
    logger.info("Terraform plan 시작: env=%s dir=%s", env_cfg.name, cfg.terraform_dir)
    init(cfg, env_cfg, grant)
    validate(cfg, env_cfg, grant)

    env = _command_env(env_cfg, grant)
    plan_file = plan_file_name(env_cfg)
    try:
        _run(
            ["terraform", "plan", "-input=false", "-no-color", _lock_timeout_arg(cfg), f"-out={plan_file}"],
            cwd=cfg.terraform_dir,
            env=env,
            timeout=cfg.command_timeout_seconds,
        )
        shown = _run(
            ["terraform", "show", "-json", plan_file],
            cwd=cfg.terraform_dir,
            env=env,
            timeout=cfg.command_timeout_seconds,
        )
        diff = _run(
            ["terraform", "show", "-no-color", plan_file],
            cwd=cfg.terraform_dir,
            env=env,
            timeout=cfg.command_timeout_seconds,
        )
    except CommandError as e:
        _raise_if_lock_error(e, env_cfg, stage="plan")
        raise ValidationError(
            f"terraform plan 실패 (env={env_cfg.name})",
            exit_status=e.returncode,
            detail=e.output or str(e),
        ) from e

    try:
        plan_json = json.loads(shown.stdout)
    except ValueError as e:
        raise ValidationError("terraform show -json 출력을 해석할 수 없습니다.", detail=shown.stdout[:2000]) from e

    result = PlanResult(
        environment=env_cfg.name,
        changes=parse_plan_changes(plan_json),
        diff=diff.stdout.strip(),
        plan_file=plan_file,
    )
    logger.info("Terraform plan 완료: env=%s (%s)", env_cfg.name, result.summary())
    return result


def parse_apply_log(lines: Iterable[str]) -> Tuple[List[str], List[str], List[str]]:
    """
    `terraform apply -json` 의 줄 단위 JSON 로그에서
    (적용 완료 리소스, 적용 실패 리소스, 에러 diagnostic 요약) 을 뽑는다.
    """
    applied: List[str] = []
    errored: List[str] = []
    diagnostics: List[str] = []
    for line in lines:
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        kind = entry.get("type")
        hook = entry.get("hook") or {}
        addr = (hook.get("resource") or {}).get("addr")
        if kind == "apply_complete" and addr:
            applied.append(addr)
        elif kind == "apply_errored" and addr:
            errored.append(addr)
        elif kind == "diagnostic":
            diag = entry.get("diagnostic") or {}
            if diag.get("severity") == "error":
                diagnostics.append(diag.get("summary") or entry.get("@message", ""))
    return applied, errored, diagnostics


def _apply_failure(
    e: CommandError,
    *,
    stage: str,
    env_cfg: EnvironmentConfig,
    planned: Sequence[str],
) -> ApplyError:
    applied, errored, diagnostics = parse_apply_log(e.output.splitlines())
    not_applied = [addr for addr in planned if addr not in applied]
    for addr in errored:
        if addr not in not_applied:
            not_applied.append(addr)
    summary = "; ".join(diagnostics) if diagnostics else str(e)
    return ApplyError(
        f"terraform {stage} 실패 (env={env_cfg.name}): {summary}",
        applied=applied,
        not_applied=not_applied,
        stage=stage,
        exit_status=e.returncode,
        detail=e.output,
    )


def apply(
    cfg: PipelineConfig,
    env_cfg: EnvironmentConfig,
    plan_result: PlanResult,
    grant: CredentialGrant,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[str, ...]:
    """
    plan 결과를 그대로 적용하고, 적용된 리소스 주소 목록을 반환한다.

    일부만 적용된 상태로 실패할 수 있으며 이때 ApplyError 에 applied/not_applied 가 담긴다.
    자동 재시도하지 않는다.
    """
    planned = [c.address for c in plan_result.changes]
    if not plan_result.has_changes:
        logger.info("적용할 변경이 없습니다: env=%s", env_cfg.name)
        return ()

    logger.info("Terraform apply 시작: env=%s (%s)", env_cfg.name, plan_result.summary())
    cmd = ["terraform", "apply", "-json", "-input=false", _lock_timeout_arg(cfg), plan_result.plan_file]
    try:
        result = _run(
            cmd,
            cwd=cfg.terraform_dir,
            env=_command_env(env_cfg, grant),
            timeout=cfg.command_timeout_seconds,
            stream_output=True,
            cancel_event=cancel_event,
        )
    except CommandCancelled as e:
        applied, _, _ = parse_apply_log(e.output.splitlines())
        raise RunCancelled(
            f"apply 도중 취소되었습니다. 적용된 리소스: {', '.join(applied) or '(확인 불가)'}",
            stage="apply",
            exit_status=e.returncode,
            detail=e.output,
            mutated=True,
        ) from e
    except CommandError as e:
        _raise_if_lock_error(e, env_cfg, stage="apply")
        raise _apply_failure(e, stage="apply", env_cfg=env_cfg, planned=planned) from e

    applied, _, _ = parse_apply_log(result.stdout.splitlines())
    logger.info("Terraform apply 완료: env=%s 적용 %d건", env_cfg.name, len(applied))
    return tuple(applied)


def destroy(
    cfg: PipelineConfig,
    env_cfg: EnvironmentConfig,
    grant: CredentialGrant,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[str, ...]:
    """
    환경의 모든 리소스를 제거한다. 샌드박스 teardown 용.
    """
    logger.info("Terraform destroy 시작: env=%s", env_cfg.name)
    init(cfg, env_cfg, grant)
    cmd = ["terraform", "apply", "-destroy", "-auto-approve", "-json", "-input=false", _lock_timeout_arg(cfg)]
    try:
        result = _run(
            cmd,
            cwd=cfg.terraform_dir,
            env=_command_env(env_cfg, grant),
            timeout=cfg.command_timeout_seconds,
            stream_output=True,
            cancel_event=cancel_event,
        )
    except CommandCancelled as e:
        raise RunCancelled(
            "destroy 도중 취소되었습니다. 환경이 일부만 제거되었을 수 있습니다.",
            stage="destroy",
            exit_status=e.returncode,
            detail=e.output,
            mutated=True,
        ) from e
    except CommandError as e:
        _raise_if_lock_error(e, env_cfg, stage="destroy")
        raise _apply_failure(e, stage="destroy", env_cfg=env_cfg, planned=()) from e

    destroyed, _, _ = parse_apply_log(result.stdout.splitlines())
    logger.info("Terraform destroy 완료: env=%s 제거 %d건", env_cfg.name, len(destroyed))
    return tuple(destroyed)
