from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values, load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.pipeline", ".env.secrets"]

DEFAULT_STATE_LOCK_TIMEOUT_SECONDS = 1200.0
BUILD_MODES = ("local_docker", "cloud_build")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def parse_bool(raw: Optional[str]) -> Optional[bool]:
    """
    "true"/"false" 계열 문자열을 bool 로 바꾼다. 알 수 없는 값이면 None.
    """
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return None


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} 값이 숫자가 아닙니다: {raw!r}") from e


def _get_int(name: str, default: int) -> int:
    return int(_get_float(name, float(default)))


@dataclass
class PipelineConfig:
    # 필수 공통
    gcp_project_id: str
    gcp_region: str
    artifact_registry_repo: str
    image_name: str
    cloud_run_service: str

    # Workload Identity Federation (GitHub secrets 로 전달되는 두 값 + 허용 저장소)
    wif_provider: str
    wif_service_account: str
    wif_repository: str

    terraform_dir: str = "terraform"
    environments_dir: str = "environments"

    # 트리거 -> 환경 매핑
    production_branch: str = "main"
    production_environment: str = "production"
    validation_environment: str = "production"
    sandbox_environment: str = "sandbox"

    build_mode: str = "local_docker"
    build_context: str = "."

    state_lock_timeout_seconds: float = DEFAULT_STATE_LOCK_TIMEOUT_SECONDS
    command_timeout_seconds: float = 1800.0

    health_check_path: str = "/"
    health_check_attempts: int = 5
    health_check_interval_seconds: float = 10.0

    # PR 코멘트
    github_api_url: str = "https://api.github.com"
    github_repository: Optional[str] = None
    github_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        missing: List[str] = []

        def req(name: str) -> str:
            val = os.getenv(name)
            if not val:
                missing.append(name)
            return val or ""

        cfg = cls(
            gcp_project_id=req("GCP_PROJECT_ID"),
            gcp_region=req("GCP_REGION"),
            artifact_registry_repo=req("ARTIFACT_REGISTRY_REPO"),
            image_name=req("IMAGE_NAME"),
            cloud_run_service=req("CLOUD_RUN_SERVICE"),
            wif_provider=req("WIF_PROVIDER"),
            wif_service_account=req("WIF_SERVICE_ACCOUNT"),
            wif_repository=req("WIF_REPOSITORY"),
            terraform_dir=os.getenv("TERRAFORM_DIR", "terraform"),
            environments_dir=os.getenv("ENVIRONMENTS_DIR", "environments"),
            production_branch=os.getenv("PRODUCTION_BRANCH", "main"),
            production_environment=os.getenv("PRODUCTION_ENVIRONMENT", "production"),
            validation_environment=os.getenv("VALIDATION_ENVIRONMENT", "production"),
            sandbox_environment=os.getenv("SANDBOX_ENVIRONMENT", "sandbox"),
            build_mode=os.getenv("BUILD_MODE", "local_docker").lower(),
            build_context=os.getenv("BUILD_CONTEXT", "."),
            state_lock_timeout_seconds=_get_float(
                "STATE_LOCK_TIMEOUT_SECONDS", DEFAULT_STATE_LOCK_TIMEOUT_SECONDS
            ),
            command_timeout_seconds=_get_float("COMMAND_TIMEOUT_SECONDS", 1800.0),
            health_check_path=os.getenv("HEALTH_CHECK_PATH", "/"),
            health_check_attempts=_get_int("HEALTH_CHECK_ATTEMPTS", 5),
            health_check_interval_seconds=_get_float("HEALTH_CHECK_INTERVAL_SECONDS", 10.0),
            github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
            github_repository=os.getenv("GITHUB_REPOSITORY"),
            github_token=os.getenv("GITHUB_TOKEN"),
        )

        if missing:
            raise ValueError(
                "필수 환경변수가 누락되었습니다: " + ", ".join(sorted(set(missing)))
            )

        if cfg.build_mode not in BUILD_MODES:
            raise ValueError(
                f"알 수 없는 BUILD_MODE 값입니다: {cfg.build_mode!r} (local_docker | cloud_build 중 하나)"
            )
        if cfg.health_check_attempts < 1:
            raise ValueError("HEALTH_CHECK_ATTEMPTS 는 1 이상이어야 합니다.")

        # GITHUB_REPOSITORY 가 없으면 WIF 바인딩 저장소에 PR 코멘트를 남긴다.
        if not cfg.github_repository:
            cfg.github_repository = cfg.wif_repository

        return cfg


@dataclass(frozen=True)
class EnvironmentConfig:
    """
    환경 이름(production, sandbox, ...) 단위의 읽기 전용 설정.
    run 도중에는 변경하지 않는다.
    """

    name: str
    resource_prefix: str
    state_bucket: str
    state_prefix: str
    allow_tag_overwrite: bool
    service_name: Optional[str] = None
    variables: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_values(cls, name: str, values: Mapping[str, Optional[str]]) -> "EnvironmentConfig":
        missing = [
            key
            for key in ("RESOURCE_PREFIX", "TF_STATE_BUCKET", "ALLOW_TAG_OVERWRITE")
            if not values.get(key)
        ]
        if missing:
            raise ValueError(
                f"환경 '{name}' 설정에 필수 값이 누락되었습니다: " + ", ".join(missing)
            )

        # 태그 덮어쓰기 정책은 암묵적으로 정하지 않는다.
        allow_overwrite = parse_bool(values.get("ALLOW_TAG_OVERWRITE"))
        if allow_overwrite is None:
            raise ValueError(
                f"환경 '{name}' 의 ALLOW_TAG_OVERWRITE 는 true/false 로 명시해야 합니다: "
                f"{values.get('ALLOW_TAG_OVERWRITE')!r}"
            )

        variables: Dict[str, str] = {"resource_prefix": values["RESOURCE_PREFIX"] or ""}
        for key, value in values.items():
            if key.startswith("TF_VAR_") and value is not None:
                variables[key[len("TF_VAR_"):]] = value

        return cls(
            name=name,
            resource_prefix=values["RESOURCE_PREFIX"] or "",
            state_bucket=values["TF_STATE_BUCKET"] or "",
            state_prefix=values.get("TF_STATE_PREFIX") or f"terraform/{name}",
            allow_tag_overwrite=allow_overwrite,
            service_name=values.get("CLOUD_RUN_SERVICE") or None,
            variables=variables,
        )

    def terraform_env(self) -> Dict[str, str]:
        return {f"TF_VAR_{key}": value for key, value in self.variables.items()}


def environment_file_path(cfg: PipelineConfig, name: str, base_dir: str = ".") -> str:
    return os.path.join(base_dir, cfg.environments_dir, f"{name}.env")


def load_environment(cfg: PipelineConfig, name: str, base_dir: str = ".") -> EnvironmentConfig:
    """
    <ENVIRONMENTS_DIR>/<name>.env 파일을 읽어 EnvironmentConfig 를 만든다.
    """
    path = environment_file_path(cfg, name, base_dir)
    if not os.path.exists(path):
        raise ValueError(f"환경 설정 파일이 없습니다: {path}")
    return EnvironmentConfig.from_values(name, dotenv_values(dotenv_path=path))
