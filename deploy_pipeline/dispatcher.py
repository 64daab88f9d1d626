"""
dispatcher
----------

트리거(푸시, PR, 수동 실행)를 정확히 하나의 파이프라인 variant 로 매핑한다.

- push (main)     -> production  : plan + apply + 배포, 수동 승인 없음
- pull_request    -> validation  : plan 만 수행하고 결과를 PR 코멘트로 남김
- manual          -> sandbox     : version / destroy 입력이 명시적으로 있어야 함
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from .config import PipelineConfig, parse_bool
from .errors import InvalidRequest
from .logging_utils import get_logger
from .models import DeploymentRequest, TriggerKind, Variant


logger = get_logger(__name__)

# 도커 태그로 그대로 쓰기 때문에 '+build' 메타데이터는 허용하지 않는다.
VERSION_PATTERN = re.compile(r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(-[0-9A-Za-z][0-9A-Za-z.-]*)?$")

GITHUB_EVENT_TRIGGERS = {
    "push": TriggerKind.PUSH,
    "pull_request": TriggerKind.PULL_REQUEST,
    "workflow_dispatch": TriggerKind.MANUAL,
}


def _branch_name(ref: str) -> str:
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


def is_valid_version(version: Optional[str]) -> bool:
    return bool(version) and VERSION_PATTERN.match(version or "") is not None


def dispatch(
    request: DeploymentRequest,
    production_branch: str = "main",
    *,
    sandbox_environment: Optional[str] = None,
    production_environment: Optional[str] = None,
) -> Variant:
    """
    요청을 검증하고 실행할 variant 를 결정한다. 잘못된 요청이면 InvalidRequest.

    sandbox_environment / production_environment 가 주어지면
    수동 실행은 sandbox 환경만 대상으로 할 수 있다.
    """
    if not request.environment:
        raise InvalidRequest("대상 환경 이름이 비어 있습니다.")

    if request.trigger == TriggerKind.PUSH:
        branch = _branch_name(request.ref)
        if branch != production_branch:
            raise InvalidRequest(
                f"push 트리거는 {production_branch} 브랜치만 배포합니다: ref={request.ref!r}"
            )
        if not request.image_tag:
            raise InvalidRequest("production 배포에는 version 또는 commit SHA 가 필요합니다.")
        variant = Variant.PRODUCTION

    elif request.trigger == TriggerKind.PULL_REQUEST:
        if request.pr_number is None:
            raise InvalidRequest("pull_request 트리거에는 PR 번호가 필요합니다.")
        variant = Variant.VALIDATION

    elif request.trigger == TriggerKind.MANUAL:
        if not request.version:
            raise InvalidRequest("수동 실행에는 version 입력이 필요합니다.")
        if not is_valid_version(request.version):
            raise InvalidRequest(f"version 형식이 올바르지 않습니다 (예: 0.0.1): {request.version!r}")
        if request.destroy is None:
            raise InvalidRequest("수동 실행에는 destroy 입력(true/false)을 명시해야 합니다.")
        if production_environment is not None and request.environment == production_environment:
            raise InvalidRequest(
                f"수동 실행은 production 환경을 대상으로 할 수 없습니다: env={request.environment!r}"
            )
        if sandbox_environment is not None and request.environment != sandbox_environment:
            raise InvalidRequest(
                f"수동 실행은 sandbox 환경({sandbox_environment!r})만 대상으로 합니다: env={request.environment!r}"
            )
        variant = Variant.SANDBOX

    else:
        raise InvalidRequest(f"알 수 없는 트리거입니다: {request.trigger!r}")

    logger.info("트리거 %s -> variant %s (env=%s)", request.trigger.value, variant.value, request.environment)
    return variant


def request_from_github_event(
    cfg: PipelineConfig,
    event_name: str,
    payload: Mapping[str, Any],
    *,
    ref: str = "",
    sha: Optional[str] = None,
) -> Optional[DeploymentRequest]:
    """
    GitHub Actions 이벤트(GITHUB_EVENT_NAME + 이벤트 payload)로 DeploymentRequest 를 만든다.

    처리 대상이 아닌 이벤트나 production 브랜치가 아닌 push 는 None 을 돌려준다.
    (워크플로우 브랜치 필터에 걸러지는 것과 같은 의미로 skipped 처리)
    """
    trigger = GITHUB_EVENT_TRIGGERS.get(event_name)
    if trigger is None:
        logger.info("처리 대상이 아닌 이벤트입니다: %s", event_name)
        return None

    if trigger == TriggerKind.PUSH:
        ref = ref or str(payload.get("ref") or "")
        if _branch_name(ref) != cfg.production_branch:
            logger.info("production 브랜치가 아닌 push 는 건너뜁니다: %s", ref)
            return None
        return DeploymentRequest(
            trigger=trigger,
            environment=cfg.production_environment,
            ref=ref,
            commit_sha=sha or payload.get("after"),
        )

    if trigger == TriggerKind.PULL_REQUEST:
        pr = payload.get("pull_request") or {}
        number = payload.get("number") or pr.get("number")
        return DeploymentRequest(
            trigger=trigger,
            environment=cfg.validation_environment,
            ref=ref or str((pr.get("head") or {}).get("ref") or ""),
            pr_number=int(number) if number is not None else None,
            base_ref=(pr.get("base") or {}).get("ref"),
            commit_sha=sha or (pr.get("head") or {}).get("sha"),
        )

    # workflow_dispatch 입력값은 문자열로 들어온다.
    inputs = payload.get("inputs") or {}
    raw_destroy = inputs.get("destroy")
    if isinstance(raw_destroy, bool):
        destroy: Optional[bool] = raw_destroy
    else:
        destroy = parse_bool(raw_destroy) if raw_destroy is not None else None
    return DeploymentRequest(
        trigger=trigger,
        environment=inputs.get("environment") or cfg.sandbox_environment,
        ref=ref or str(payload.get("ref") or ""),
        version=(inputs.get("version") or None),
        destroy=destroy,
        commit_sha=sha,
    )
