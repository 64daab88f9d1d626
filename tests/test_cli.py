import pytest
from click.testing import CliRunner

from deploy_pipeline import cli


REQUIRED_ENV = {
    "GCP_PROJECT_ID": "test-project",
    "GCP_REGION": "us-central1",
    "ARTIFACT_REGISTRY_REPO": "apps",
    "IMAGE_NAME": "api",
    "CLOUD_RUN_SERVICE": "api",
    "WIF_PROVIDER": "projects/123/locations/global/workloadIdentityPools/github/providers/github",
    "WIF_SERVICE_ACCOUNT": "deployer@test-project.iam.gserviceaccount.com",
    "WIF_REPOSITORY": "acme/app",
}


@pytest.fixture
def pipeline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    for key in ("GITHUB_EVENT_NAME", "GITHUB_EVENT_PATH", "GITHUB_STEP_SUMMARY", "BUILD_MODE"):
        monkeypatch.delenv(key, raising=False)
    # 테스트 프로세스의 시그널 핸들러는 건드리지 않는다.
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)


def test_plan_describes_sandbox_run(pipeline_env, tmp_path) -> None:  # noqa: ANN001
    result = CliRunner().invoke(
        cli.main, ["-C", str(tmp_path), "plan", "--event", "manual", "--version", "0.0.1", "--destroy"]
    )

    assert result.exit_code == 0, result.output
    assert "- variant: sandbox" in result.output
    assert "- destroy: RUN" in result.output
    assert "apps/api:0.0.1" in result.output


def test_plan_rejects_bad_version(pipeline_env, tmp_path) -> None:  # noqa: ANN001
    result = CliRunner().invoke(
        cli.main, ["-C", str(tmp_path), "plan", "--event", "manual", "--version", "latest", "--no-destroy"]
    )

    assert result.exit_code == 1
    assert "InvalidRequest" in result.output


def test_missing_config_fails(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:  # noqa: ANN001
    for key in REQUIRED_ENV:
        monkeypatch.delenv(key, raising=False)

    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "plan", "--event", "push"])

    assert result.exit_code == 1
    assert "GCP_PROJECT_ID" in result.output


def test_run_skips_unhandled_github_event(pipeline_env, monkeypatch, tmp_path) -> None:  # noqa: ANN001
    monkeypatch.setenv("GITHUB_EVENT_NAME", "schedule")

    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "run"])

    assert result.exit_code == 0, result.output
    assert "- status: skipped" in result.output


def test_run_failure_exits_non_zero(pipeline_env, monkeypatch, tmp_path) -> None:  # noqa: ANN001
    summary = tmp_path / "summary.md"
    monkeypatch.setenv("GITHUB_STEP_SUMMARY", str(summary))

    result = CliRunner().invoke(
        cli.main, ["-C", str(tmp_path), "run", "--event", "push", "--ref", "refs/heads/feature", "--sha", "abc123"]
    )

    assert result.exit_code == 1
    assert "- status: failed" in result.output
    assert "InvalidRequest" in summary.read_text(encoding="utf-8")


def test_init_writes_templates(tmp_path) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "init"])

    assert result.exit_code == 0, result.output
    assert (tmp_path / ".env.pipeline.example").exists()
    assert "ALLOW_TAG_OVERWRITE=false" in (tmp_path / "environments" / "production.env.example").read_text(
        encoding="utf-8"
    )
