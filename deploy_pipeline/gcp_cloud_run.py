"""
gcp_cloud_run
-------------

Cloud Run 서비스 배포(Service Deployer) 및 배포 후 엔드포인트 헬스 체크.

`gcloud run deploy` 는 새 리비전이 준비된 뒤에만 트래픽을 옮긴다.
배포가 실패하면 기존 리비전이 계속 서비스하며, 여기서 강제로 전환하거나 롤백하지 않는다.
"""

from __future__ import annotations

import json
import os
import time
from typing import Callable, Optional

import httpx

from .config import EnvironmentConfig, PipelineConfig
from .errors import DeployError
from .logging_utils import get_logger
from .models import CredentialGrant
from .subprocess_utils import CommandError, RunResult, run_command


logger = get_logger(__name__)


def _run(cmd: list[str], *, env: dict[str, str], timeout: float) -> RunResult:
    return run_command(cmd, env=env, timeout=timeout)


def service_name(cfg: PipelineConfig, env_cfg: EnvironmentConfig) -> str:
    return env_cfg.service_name or f"{env_cfg.resource_prefix}-{cfg.cloud_run_service}"


def deploy_service(
    cfg: PipelineConfig,
    env_cfg: EnvironmentConfig,
    image_ref: str,
    grant: CredentialGrant,
) -> str:
    """
    Cloud Run 서비스가 image_ref 를 서비스하도록 업데이트하고, 엔드포인트 URL 을 반환한다.
    """
    name = service_name(cfg, env_cfg)
    logger.info("Cloud Run 서비스 배포: %s image=%s", name, image_ref)

    cmd = [
        "gcloud",
        "run",
        "deploy",
        name,
        f"--image={image_ref}",
        f"--region={cfg.gcp_region}",
        f"--project={cfg.gcp_project_id}",
        "--quiet",
        "--format=json",
    ]
    try:
        result = _run(cmd, env=grant.subprocess_env(dict(os.environ)), timeout=cfg.command_timeout_seconds)
    except CommandError as e:
        raise DeployError(
            f"Cloud Run 배포 실패: {name} (기존 리비전이 계속 서비스됩니다)",
            exit_status=e.returncode,
            detail=e.output or str(e),
        ) from e

    try:
        service = json.loads(result.stdout)
    except ValueError as e:
        raise DeployError(f"gcloud run deploy 출력을 해석할 수 없습니다: {name}", detail=result.stdout[:2000]) from e

    url = (service.get("status") or {}).get("url")
    if not url:
        raise DeployError(f"배포된 서비스의 URL 을 확인할 수 없습니다: {name}", detail=result.stdout[:2000])

    logger.info("Cloud Run 배포 완료: %s -> %s", name, url)
    return url


def check_health(
    cfg: PipelineConfig,
    url: str,
    http_client: Optional[httpx.Client] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    배포된 엔드포인트가 2xx 로 응답하는지 확인한다.

    HEALTH_CHECK_ATTEMPTS 만큼 폴링하고, 끝까지 성공하지 못하면 DeployError.
    """
    target = url.rstrip("/") + "/" + cfg.health_check_path.lstrip("/")
    client = http_client or httpx.Client(timeout=10.0, follow_redirects=True)
    last_problem = ""
    try:
        for attempt in range(1, cfg.health_check_attempts + 1):
            try:
                resp = client.get(target)
                if resp.is_success:
                    logger.info("헬스 체크 성공: %s (HTTP %d, 시도 %d)", target, resp.status_code, attempt)
                    return
                last_problem = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                last_problem = f"{type(e).__name__}: {e}"

            logger.info("헬스 체크 대기: %s (%s, 시도 %d/%d)", target, last_problem, attempt, cfg.health_check_attempts)
            if attempt < cfg.health_check_attempts:
                sleep(cfg.health_check_interval_seconds)
    finally:
        if http_client is None:
            client.close()

    raise DeployError(
        f"엔드포인트 헬스 체크 실패: {target}",
        stage="health_check",
        detail=last_problem,
    )
