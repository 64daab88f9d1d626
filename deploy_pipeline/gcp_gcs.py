"""
gcp_gcs
-------

Terraform 원격 상태가 저장되는 GCS 버킷 점검.
상태 버킷은 run 사이에 유지되는 유일한 저장소이며, 여기서는 존재/접근 여부만 확인한다.
"""

from __future__ import annotations

from google.api_core.exceptions import Forbidden
from google.cloud import storage

from .config import EnvironmentConfig, PipelineConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


def check_state_bucket(cfg: PipelineConfig, env_cfg: EnvironmentConfig) -> str:
    """
    상태 버킷 존재 여부를 확인만 하고, 생성하지 않는다.
    """
    bucket_name = env_cfg.state_bucket
    client = storage.Client(project=cfg.gcp_project_id)
    bucket = client.bucket(bucket_name)

    try:
        exists = bucket.exists()
    except Forbidden:
        return f"State bucket: 접근 권한 없음 ({bucket_name})"

    if exists:
        logger.debug("상태 버킷 확인: %s (prefix=%s)", bucket_name, env_cfg.state_prefix)
        return f"State bucket: 버킷 존재함 ({bucket_name}/{env_cfg.state_prefix})"
    return f"State bucket: 버킷 없음 ({bucket_name})"
