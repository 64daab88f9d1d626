import pytest

from deploy_pipeline.config import EnvironmentConfig, PipelineConfig, load_environment


def _base_env() -> dict[str, str]:
    return {
        "GCP_PROJECT_ID": "test-project",
        "GCP_REGION": "us-central1",
        "ARTIFACT_REGISTRY_REPO": "apps",
        "IMAGE_NAME": "api",
        "CLOUD_RUN_SERVICE": "api",
        "WIF_PROVIDER": "projects/1/locations/global/workloadIdentityPools/p/providers/gh",
        "WIF_SERVICE_ACCOUNT": "deployer@test-project.iam.gserviceaccount.com",
        "WIF_REPOSITORY": "acme/app",
    }


def _set_env(monkeypatch: pytest.MonkeyPatch, env: dict[str, str]) -> None:
    for key in ("GITHUB_REPOSITORY", "BUILD_MODE", "STATE_LOCK_TIMEOUT_SECONDS"):
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)


def test_missing_required_env_raises_value_error(monkeypatch: pytest.MonkeyPatch) -> None:
    env = _base_env()
    env.pop("WIF_PROVIDER")
    _set_env(monkeypatch, env)
    monkeypatch.delenv("WIF_PROVIDER", raising=False)

    with pytest.raises(ValueError) as excinfo:
        PipelineConfig.from_env()

    assert "WIF_PROVIDER" in str(excinfo.value)


def test_defaults_and_lock_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_env(monkeypatch, _base_env())

    cfg = PipelineConfig.from_env()

    assert cfg.state_lock_timeout_seconds == 1200.0
    assert cfg.production_branch == "main"
    assert cfg.sandbox_environment == "sandbox"
    # GITHUB_REPOSITORY 가 없으면 WIF 바인딩 저장소를 사용
    assert cfg.github_repository == "acme/app"


def test_unknown_build_mode_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    env = _base_env()
    env["BUILD_MODE"] = "kaniko"
    _set_env(monkeypatch, env)

    with pytest.raises(ValueError) as excinfo:
        PipelineConfig.from_env()

    assert "kaniko" in str(excinfo.value)


def test_environment_requires_explicit_overwrite_policy() -> None:
    with pytest.raises(ValueError) as excinfo:
        EnvironmentConfig.from_values(
            "sandbox", {"RESOURCE_PREFIX": "sbx", "TF_STATE_BUCKET": "bucket"}
        )
    assert "ALLOW_TAG_OVERWRITE" in str(excinfo.value)

    with pytest.raises(ValueError):
        EnvironmentConfig.from_values(
            "sandbox",
            {"RESOURCE_PREFIX": "sbx", "TF_STATE_BUCKET": "bucket", "ALLOW_TAG_OVERWRITE": "maybe"},
        )


def test_load_environment_reads_tf_vars(tmp_path, cfg) -> None:  # noqa: ANN001
    env_dir = tmp_path / "environments"
    env_dir.mkdir()
    (env_dir / "sandbox.env").write_text(
        "RESOURCE_PREFIX=sbx\n"
        "TF_STATE_BUCKET=tfstate\n"
        "ALLOW_TAG_OVERWRITE=true\n"
        "TF_VAR_min_instances=0\n",
        encoding="utf-8",
    )

    env_cfg = load_environment(cfg, "sandbox", base_dir=str(tmp_path))

    assert env_cfg.allow_tag_overwrite is True
    assert env_cfg.state_prefix == "terraform/sandbox"
    assert env_cfg.terraform_env() == {
        "TF_VAR_resource_prefix": "sbx",
        "TF_VAR_min_instances": "0",
    }


def test_load_environment_missing_file(tmp_path, cfg) -> None:  # noqa: ANN001
    with pytest.raises(ValueError):
        load_environment(cfg, "staging", base_dir=str(tmp_path))
