"""
gcp_artifact_registry
---------------------

컨테이너 이미지 빌드 및 Artifact Registry 푸시(Image Publisher)를 담당하는 모듈.

- 푸시는 빌드가 성공한 뒤에만 시도한다.
- 같은 태그가 이미 있으면 환경 설정의 ALLOW_TAG_OVERWRITE 가 true 일 때만 덮어쓴다.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional, Sequence

from .config import EnvironmentConfig, PipelineConfig
from .errors import BuildError, PublishError
from .logging_utils import get_logger
from .models import CredentialGrant
from .subprocess_utils import CommandError, RunResult, run_command


logger = get_logger(__name__)


def _run(
    cmd: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    timeout: float = 1800.0,
) -> RunResult:
    return run_command(cmd, env=env, input_text=input_text, timeout=timeout)


def registry_host(cfg: PipelineConfig) -> str:
    return f"{cfg.gcp_region}-docker.pkg.dev"


def image_reference(cfg: PipelineConfig, tag: str) -> str:
    return f"{registry_host(cfg)}/{cfg.gcp_project_id}/{cfg.artifact_registry_repo}/{cfg.image_name}:{tag}"


def tag_exists(cfg: PipelineConfig, image_ref: str, grant: CredentialGrant) -> bool:
    cmd = [
        "gcloud",
        "artifacts",
        "docker",
        "images",
        "describe",
        image_ref,
        f"--project={cfg.gcp_project_id}",
        "--format=json",
        "--quiet",
    ]
    try:
        _run(cmd, env=grant.subprocess_env(dict(os.environ)))
        return True
    except CommandError as e:
        text = (e.output or str(e)).lower()
        if "not_found" in text or "not found" in text:
            return False
        raise PublishError(
            f"이미지 태그 존재 여부를 확인하지 못했습니다: {image_ref}",
            exit_status=e.returncode,
            detail=e.output or str(e),
        ) from e


def _ensure_overwrite_allowed(cfg: PipelineConfig, env_cfg: EnvironmentConfig,
                              image_ref: str, grant: CredentialGrant) -> None:
    if not tag_exists(cfg, image_ref, grant):
        return
    if not env_cfg.allow_tag_overwrite:
        raise PublishError(
            f"태그가 이미 존재하고 환경 '{env_cfg.name}' 은 덮어쓰기를 허용하지 않습니다: {image_ref}"
        )
    logger.warning("기존 태그를 덮어씁니다 (ALLOW_TAG_OVERWRITE=true): %s", image_ref)


def publish_image(
    cfg: PipelineConfig,
    env_cfg: EnvironmentConfig,
    tag: str,
    grant: CredentialGrant,
    context_dir: Optional[str] = None,
) -> str:
    """
    이미지를 빌드하고 Artifact Registry 에 푸시한 뒤 최종 이미지 참조를 반환한다.

    빌드 방식은 cfg.build_mode 에 따른다.
    - local_docker: docker build -> (태그 확인) -> docker login -> docker push
    - cloud_build : (태그 확인) -> gcloud builds submit --tag (빌드 성공 시에만 푸시됨)
    """
    image_ref = image_reference(cfg, tag)
    context_dir = context_dir or cfg.build_context
    env = grant.subprocess_env(dict(os.environ))
    timeout = cfg.command_timeout_seconds

    mode = (cfg.build_mode or "local_docker").lower()
    logger.info("이미지 빌드 모드: %s (%s)", mode, image_ref)

    if mode == "local_docker":
        try:
            _run(["docker", "build", "-t", image_ref, context_dir], env=env, timeout=timeout)
        except CommandError as e:
            raise BuildError(f"docker build 실패: {image_ref}", exit_status=e.returncode, detail=e.output or str(e)) from e

        _ensure_overwrite_allowed(cfg, env_cfg, image_ref, grant)

        try:
            _run(
                ["docker", "login", "-u", "oauth2accesstoken", "--password-stdin", f"https://{registry_host(cfg)}"],
                env=env,
                input_text=grant.access_token,
                timeout=timeout,
            )
            _run(["docker", "push", image_ref], env=env, timeout=timeout)
        except CommandError as e:
            raise PublishError(f"docker push 실패: {image_ref}", exit_status=e.returncode, detail=e.output or str(e)) from e

    elif mode == "cloud_build":
        _ensure_overwrite_allowed(cfg, env_cfg, image_ref, grant)
        cmd = [
            "gcloud",
            "builds",
            "submit",
            context_dir,
            f"--tag={image_ref}",
            f"--project={cfg.gcp_project_id}",
        ]
        try:
            _run(cmd, env=env, timeout=timeout)
        except CommandError as e:
            raise BuildError(
                f"Cloud Build 빌드/푸시 실패: {image_ref}", exit_status=e.returncode, detail=e.output or str(e)
            ) from e

    else:
        raise BuildError(f"알 수 없는 BUILD_MODE 값입니다: {cfg.build_mode!r} (local_docker | cloud_build 중 하나)")

    logger.info("이미지 빌드/푸시 완료: %s", image_ref)
    return image_ref


def check_repository(cfg: PipelineConfig) -> str:
    """
    Artifact Registry 리포지토리 존재 여부를 확인만 하고, 생성하지 않는다.
    (리포지토리 자체는 Terraform 이 관리한다)
    """
    repo = cfg.artifact_registry_repo
    describe_cmd = [
        "gcloud",
        "artifacts",
        "repositories",
        "describe",
        repo,
        f"--location={cfg.gcp_region}",
        f"--project={cfg.gcp_project_id}",
        "--quiet",
    ]

    try:
        _run(describe_cmd, timeout=120.0)
        return f"Artifact Registry: 리포지토리 존재함 ({repo})"
    except CommandError as e:
        if e.returncode is None:
            return "Artifact Registry: gcloud 명령을 찾을 수 없어 상태 확인 불가"
        return f"Artifact Registry: 리포지토리 없음 (Terraform apply 필요) ({repo})"
