"""
pytest 설정:

로컬 환경에 다른 버전의 deploy_pipeline 패키지가 설치되어 있으면
site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.
"""

from __future__ import annotations

import base64
import json
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


def make_assertion(claims: dict) -> str:
    def _b64(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    header = _b64(json.dumps({"alg": "RS256", "typ": "JWT"}).encode())
    payload = _b64(json.dumps(claims).encode())
    return f"{header}.{payload}.signature"


@pytest.fixture
def cfg():
    from deploy_pipeline.config import PipelineConfig

    return PipelineConfig(
        gcp_project_id="test-project",
        gcp_region="us-central1",
        artifact_registry_repo="apps",
        image_name="api",
        cloud_run_service="api",
        wif_provider="projects/123/locations/global/workloadIdentityPools/github/providers/github",
        wif_service_account="deployer@test-project.iam.gserviceaccount.com",
        wif_repository="acme/app",
        github_repository="acme/app",
        github_token="test-token",
        health_check_attempts=3,
        health_check_interval_seconds=0.0,
    )


@pytest.fixture
def env_cfg():
    from deploy_pipeline.config import EnvironmentConfig

    return EnvironmentConfig(
        name="sandbox",
        resource_prefix="sbx",
        state_bucket="test-tfstate",
        state_prefix="terraform/sandbox",
        allow_tag_overwrite=False,
        variables={"resource_prefix": "sbx"},
    )


@pytest.fixture
def grant():
    from deploy_pipeline.models import CredentialGrant

    return CredentialGrant(
        access_token="ya29.test-token",
        service_account="deployer@test-project.iam.gserviceaccount.com",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        repository="acme/app",
    )


@pytest.fixture
def assertion_factory():
    return make_assertion
