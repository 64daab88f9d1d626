import json
from typing import List

import pytest

from deploy_pipeline import terraform as tf
from deploy_pipeline.errors import ApplyError, LockContentionError, RunCancelled, ValidationError
from deploy_pipeline.models import PlanResult, ResourceChange
from deploy_pipeline.subprocess_utils import CommandCancelled, CommandError, RunResult


PLAN_JSON = {
    "resource_changes": [
        {"address": "google_cloud_run_v2_service.api", "change": {"actions": ["update"]}},
        {"address": "google_storage_bucket.assets", "change": {"actions": ["create"]}},
        {"address": "google_project_iam_member.old", "change": {"actions": ["delete"]}},
        {"address": "google_sql_database.main", "change": {"actions": ["delete", "create"]}},
        {"address": "data.google_project.this", "change": {"actions": ["read"]}},
        {"address": "google_service_account.runtime", "change": {"actions": ["no-op"]}},
    ]
}


def _apply_line(kind: str, addr: str) -> str:
    return json.dumps({"type": kind, "hook": {"resource": {"addr": addr}, "action": "create"}})


class _FakeTerraform:
    def __init__(self, fail_on: str = "", error: Exception | None = None) -> None:
        self.calls: List[list[str]] = []
        self.envs: List[dict] = []
        self.fail_on = fail_on
        self.error = error

    def __call__(self, cmd, *, cwd, env, timeout, stream_output=False, cancel_event=None):  # noqa: ANN001, ARG002
        self.calls.append(list(cmd))
        self.envs.append(dict(env))
        if self.fail_on and self.fail_on in " ".join(cmd):
            raise self.error or CommandError("failed", cmd=cmd, returncode=1, output="boom")
        if cmd[:3] == ["terraform", "show", "-json"]:
            return RunResult(0, json.dumps(PLAN_JSON), "")
        if cmd[:2] == ["terraform", "show"]:
            return RunResult(0, "  # google_cloud_run_v2_service.api will be updated in-place\n", "")
        if cmd[:2] == ["terraform", "apply"]:
            lines = [_apply_line("apply_complete", "google_storage_bucket.assets")]
            return RunResult(0, "\n".join(lines), "")
        return RunResult(0, "", "")


def test_plan_validates_before_diff_and_parses_changes(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    fake = _FakeTerraform()
    monkeypatch.setattr(tf, "_run", fake)

    result = tf.plan(cfg, env_cfg, grant)

    subcommands = [c[1] for c in fake.calls]
    assert subcommands == ["init", "fmt", "validate", "plan", "show", "show"]
    assert result.changes == (
        ResourceChange("google_cloud_run_v2_service.api", "update"),
        ResourceChange("google_storage_bucket.assets", "create"),
        ResourceChange("google_project_iam_member.old", "destroy"),
        ResourceChange("google_sql_database.main", "replace"),
    )
    assert result.summary() == "2 to add, 1 to change, 2 to destroy"
    assert "-backend-config=bucket=test-tfstate" in fake.calls[0]
    assert "-lock-timeout=1200s" in fake.calls[3]

    env = fake.envs[3]
    assert env["GOOGLE_OAUTH_ACCESS_TOKEN"] == grant.access_token
    assert env["TF_VAR_resource_prefix"] == "sbx"
    assert env["TF_DATA_DIR"] == ".terraform-sandbox"


def test_plan_is_idempotent_for_unchanged_state(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    monkeypatch.setattr(tf, "_run", _FakeTerraform())

    first = tf.plan(cfg, env_cfg, grant)
    second = tf.plan(cfg, env_cfg, grant)

    assert first == second


def test_fmt_failure_is_validation_error_without_plan(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    fake = _FakeTerraform(
        fail_on="fmt",
        error=CommandError("fmt", cmd=["terraform", "fmt"], returncode=3, output="main.tf\n"),
    )
    monkeypatch.setattr(tf, "_run", fake)

    with pytest.raises(ValidationError) as excinfo:
        tf.plan(cfg, env_cfg, grant)

    assert excinfo.value.exit_status == 3
    assert excinfo.value.detail == "main.tf\n"
    assert not any(c[1] == "plan" for c in fake.calls)


def test_state_lock_error_reports_lock_id(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    output = (
        "Error: Error acquiring the state lock\n\n"
        "Lock Info:\n  ID:        1700000000000000\n  Path:      gs://test-tfstate/terraform/sandbox/default.tflock\n"
    )
    fake = _FakeTerraform(
        fail_on="terraform plan",
        error=CommandError("plan", cmd=["terraform", "plan"], returncode=1, output=output),
    )
    monkeypatch.setattr(tf, "_run", fake)

    with pytest.raises(LockContentionError) as excinfo:
        tf.plan(cfg, env_cfg, grant)

    assert excinfo.value.lock_id == "1700000000000000"
    assert excinfo.value.requires_manual_unlock
    assert "force-unlock" in excinfo.value.message


def _plan_result() -> PlanResult:
    return PlanResult(
        environment="sandbox",
        changes=(
            ResourceChange("google_storage_bucket.assets", "create"),
            ResourceChange("google_cloud_run_v2_service.api", "update"),
        ),
        diff="...",
        plan_file="sandbox.tfplan",
    )


def test_apply_returns_applied_addresses(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    fake = _FakeTerraform()
    monkeypatch.setattr(tf, "_run", fake)

    applied = tf.apply(cfg, env_cfg, _plan_result(), grant)

    assert applied == ("google_storage_bucket.assets",)
    assert fake.calls[0][-1] == "sandbox.tfplan"


def test_apply_without_changes_does_not_run_terraform(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    fake = _FakeTerraform()
    monkeypatch.setattr(tf, "_run", fake)

    empty = PlanResult(environment="sandbox", changes=(), diff="No changes.")
    assert tf.apply(cfg, env_cfg, empty, grant) == ()
    assert fake.calls == []


def test_partial_apply_reports_applied_and_not_applied(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    output = "\n".join(
        [
            _apply_line("apply_complete", "google_storage_bucket.assets"),
            _apply_line("apply_errored", "google_cloud_run_v2_service.api"),
            json.dumps({"type": "diagnostic", "diagnostic": {"severity": "error", "summary": "Error 403"}}),
        ]
    )
    fake = _FakeTerraform(
        fail_on="terraform apply",
        error=CommandError("apply", cmd=["terraform", "apply"], returncode=1, output=output),
    )
    monkeypatch.setattr(tf, "_run", fake)

    with pytest.raises(ApplyError) as excinfo:
        tf.apply(cfg, env_cfg, _plan_result(), grant)

    err = excinfo.value
    assert err.applied == ("google_storage_bucket.assets",)
    assert err.not_applied == ("google_cloud_run_v2_service.api",)
    assert err.mutated is True
    assert "Error 403" in err.message


def test_cancelled_apply_is_partial(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    fake = _FakeTerraform(
        fail_on="terraform apply",
        error=CommandCancelled("cancelled", cmd=["terraform", "apply"], returncode=-9, output=""),
    )
    monkeypatch.setattr(tf, "_run", fake)

    with pytest.raises(RunCancelled) as excinfo:
        tf.apply(cfg, env_cfg, _plan_result(), grant)

    assert excinfo.value.mutated is True
    assert excinfo.value.stage == "apply"


def test_destroy_runs_apply_destroy(monkeypatch, cfg, env_cfg, grant) -> None:  # noqa: ANN001
    fake = _FakeTerraform()
    monkeypatch.setattr(tf, "_run", fake)

    tf.destroy(cfg, env_cfg, grant)

    assert fake.calls[0][1] == "init"
    assert fake.calls[1][:3] == ["terraform", "apply", "-destroy"]
    assert "-auto-approve" in fake.calls[1]
