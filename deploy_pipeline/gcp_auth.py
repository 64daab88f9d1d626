"""
gcp_auth
--------

Workload Identity Federation 으로 CI 러너의 OIDC 토큰을
배포 서비스 계정 하나로 범위가 제한된 단기 액세스 토큰으로 교환한다.

흐름:
  1) GitHub 러너에서 OIDC assertion(JWT) 획득
  2) assertion 의 repository 클레임이 WIF_REPOSITORY 와 같은지 확인
  3) Google STS 로 federated token 교환
  4) IAM Credentials generateAccessToken 으로 서비스 계정 impersonation

장기 키는 어디에도 저장하지 않는다.
"""

from __future__ import annotations

import base64
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from .config import PipelineConfig
from .errors import AuthenticationError
from .logging_utils import get_logger
from .models import CredentialGrant


logger = get_logger(__name__)

STS_TOKEN_URL = "https://sts.googleapis.com/v1/token"
IAM_CREDENTIALS_URL = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/{account}:generateAccessToken"
)
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
TOKEN_LIFETIME_SECONDS = 3600


def provider_audience(cfg: PipelineConfig) -> str:
    """
    WIF_PROVIDER 는 projects/<num>/locations/global/workloadIdentityPools/<pool>/providers/<id> 형태.
    """
    return f"//iam.googleapis.com/{cfg.wif_provider.strip('/')}"


def decode_assertion_claims(assertion: str) -> Dict[str, Any]:
    """
    JWT payload 를 서명 검증 없이 디코딩한다.
    서명 검증은 STS(identity provider) 쪽 책임이고, 여기서는 저장소 바인딩만 미리 확인한다.
    """
    parts = assertion.split(".")
    if len(parts) != 3:
        raise AuthenticationError("OIDC assertion 형식이 올바르지 않습니다 (JWT 아님).")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeDecodeError) as e:
        raise AuthenticationError("OIDC assertion payload 를 해석할 수 없습니다.") from e
    if not isinstance(claims, dict):
        raise AuthenticationError("OIDC assertion payload 가 객체가 아닙니다.")
    return claims


def fetch_github_oidc_token(audience: str, http_client: Optional[httpx.Client] = None) -> str:
    """
    GitHub Actions 러너에서 OIDC 토큰을 받아온다.
    (워크플로우에 `permissions: id-token: write` 가 필요하다)

    로컬 실행 등에서는 PIPELINE_OIDC_TOKEN 으로 직접 넘길 수 있다.
    """
    direct = os.getenv("PIPELINE_OIDC_TOKEN")
    if direct:
        return direct

    request_url = os.getenv("ACTIONS_ID_TOKEN_REQUEST_URL")
    request_token = os.getenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
    if not request_url or not request_token:
        raise AuthenticationError(
            "OIDC 토큰을 요청할 수 없습니다. ACTIONS_ID_TOKEN_REQUEST_URL/TOKEN 이 없습니다 "
            "(워크플로우 permissions 에 id-token: write 가 있는지 확인하세요)."
        )

    client = http_client or httpx.Client(timeout=30.0)
    try:
        resp = client.get(
            request_url,
            params={"audience": audience},
            headers={"Authorization": f"bearer {request_token}"},
        )
    except httpx.HTTPError as e:
        raise AuthenticationError(f"GitHub OIDC 토큰 요청 실패: {e}") from e
    finally:
        if http_client is None:
            client.close()

    if resp.status_code != 200:
        raise AuthenticationError(
            f"GitHub OIDC 토큰 요청 실패 (HTTP {resp.status_code})",
            detail=resp.text[:500],
        )
    try:
        value = resp.json().get("value")
    except (ValueError, AttributeError) as e:
        raise AuthenticationError("GitHub OIDC 응답을 해석할 수 없습니다.", detail=resp.text[:500]) from e
    if not value:
        raise AuthenticationError("GitHub OIDC 응답에 토큰이 없습니다.")
    return value


def _post_json(client: httpx.Client, url: str, body: Dict[str, Any], *, what: str,
               headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    try:
        resp = client.post(url, json=body, headers=headers)
    except httpx.HTTPError as e:
        raise AuthenticationError(f"{what} 에 연결할 수 없습니다: {e}") from e
    if resp.status_code != 200:
        raise AuthenticationError(
            f"{what} 요청이 거부되었습니다 (HTTP {resp.status_code})",
            detail=resp.text[:500],
        )
    try:
        payload = resp.json()
    except ValueError as e:
        raise AuthenticationError(f"{what} 응답이 JSON 이 아닙니다.", detail=resp.text[:500]) from e
    if not isinstance(payload, dict):
        raise AuthenticationError(f"{what} 응답 형식이 올바르지 않습니다.", detail=resp.text[:500])
    return payload


def exchange_credentials(
    cfg: PipelineConfig,
    assertion: str,
    http_client: Optional[httpx.Client] = None,
    *,
    now: Optional[datetime] = None,
) -> CredentialGrant:
    """
    OIDC assertion 을 WIF_SERVICE_ACCOUNT 로 범위가 제한된 CredentialGrant 로 교환한다.

    저장소 클레임이 바인딩과 다르면 네트워크 호출 전에 AuthenticationError.
    """
    claims = decode_assertion_claims(assertion)
    repository = claims.get("repository")
    if repository != cfg.wif_repository:
        raise AuthenticationError(
            f"OIDC assertion 의 repository({repository!r}) 가 "
            f"허용된 저장소({cfg.wif_repository!r}) 와 일치하지 않습니다."
        )

    logger.info("Workload Identity 토큰 교환: provider=%s sa=%s", cfg.wif_provider, cfg.wif_service_account)

    client = http_client or httpx.Client(timeout=30.0)
    try:
        sts = _post_json(
            client,
            STS_TOKEN_URL,
            {
                "grantType": "urn:ietf:params:oauth:grant-type:token-exchange",
                "audience": provider_audience(cfg),
                "scope": CLOUD_PLATFORM_SCOPE,
                "requestedTokenType": "urn:ietf:params:oauth:token-type:access_token",
                "subjectTokenType": "urn:ietf:params:oauth:token-type:jwt",
                "subjectToken": assertion,
            },
            what="Google STS",
        )
        federated = sts.get("access_token")
        if not federated:
            raise AuthenticationError("Google STS 응답에 access_token 이 없습니다.")

        impersonated = _post_json(
            client,
            IAM_CREDENTIALS_URL.format(account=cfg.wif_service_account),
            {"scope": [CLOUD_PLATFORM_SCOPE], "lifetime": f"{TOKEN_LIFETIME_SECONDS}s"},
            headers={"Authorization": f"Bearer {federated}"},
            what="IAM Credentials",
        )
    finally:
        if http_client is None:
            client.close()

    access_token = impersonated.get("accessToken")
    if not access_token:
        raise AuthenticationError("IAM Credentials 응답에 accessToken 이 없습니다.")

    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=TOKEN_LIFETIME_SECONDS)
    expire_time = impersonated.get("expireTime")
    if expire_time:
        try:
            expires_at = datetime.fromisoformat(expire_time.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("expireTime 형식을 해석하지 못해 기본 만료시간을 사용합니다: %s", expire_time)

    logger.info("서비스 계정 토큰 발급 완료: %s (만료 %s)", cfg.wif_service_account, expires_at.isoformat())
    return CredentialGrant(
        access_token=access_token,
        service_account=cfg.wif_service_account,
        expires_at=expires_at,
        repository=repository,
    )


def authenticate(cfg: PipelineConfig, http_client: Optional[httpx.Client] = None) -> CredentialGrant:
    """
    러너에서 assertion 을 받아 바로 교환까지 수행한다.
    """
    assertion = fetch_github_oidc_token(f"https:{provider_audience(cfg)}", http_client=http_client)
    return exchange_credentials(cfg, assertion, http_client=http_client)
