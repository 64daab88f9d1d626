import json

import httpx
import pytest

from deploy_pipeline import github
from deploy_pipeline.errors import ReportError
from deploy_pipeline.models import PlanResult, ResourceChange


def _plan() -> PlanResult:
    return PlanResult(
        environment="production",
        changes=(ResourceChange("google_storage_bucket.assets", "create"),),
        diff="+ resource google_storage_bucket.assets",
    )


def test_post_pr_comment(cfg) -> None:  # noqa: ANN001
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)["body"]
        return httpx.Response(201, json={"html_url": "https://github.com/acme/app/pull/7#issuecomment-1"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    url = github.post_pr_comment(cfg, 7, github.format_plan_comment(_plan()), http_client=client)

    assert url.endswith("issuecomment-1")
    assert seen["url"] == "https://api.github.com/repos/acme/app/issues/7/comments"
    assert seen["auth"] == "Bearer test-token"
    assert "1 to add, 0 to change, 0 to destroy" in seen["body"]
    assert "google_storage_bucket.assets" in seen["body"]


def test_post_pr_comment_failure(cfg) -> None:  # noqa: ANN001
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(403, text="forbidden")))

    with pytest.raises(ReportError):
        github.post_pr_comment(cfg, 7, "body", http_client=client)


def test_write_step_summary(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "summary.md"
    monkeypatch.setenv("GITHUB_STEP_SUMMARY", str(target))

    assert github.write_step_summary("# Pipeline summary")
    assert github.write_step_summary("- status: succeeded")

    assert target.read_text(encoding="utf-8") == "# Pipeline summary\n- status: succeeded\n"


def test_write_step_summary_outside_runner(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GITHUB_STEP_SUMMARY", raising=False)
    assert github.write_step_summary("anything") is False


def test_post_pr_comment_with_unreadable_body_returns_empty_url(cfg) -> None:  # noqa: ANN001
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(201, text="<html>ok</html>")))

    assert github.post_pr_comment(cfg, 7, "body", http_client=client) == ""
