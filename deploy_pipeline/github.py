"""
github
------

실행 결과를 GitHub 쪽에 남기는 reporter.

- PR 검증 variant: plan 결과(또는 실패 내용)를 PR 코멘트로 게시
- 모든 variant: $GITHUB_STEP_SUMMARY 에 run 요약 추가
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, List, Optional

import httpx

from .config import PipelineConfig
from .errors import ReportError
from .logging_utils import get_logger
from .models import PlanResult

if TYPE_CHECKING:
    from .models import DeploymentOutcome


logger = get_logger(__name__)

# GitHub 코멘트 본문 최대 길이(65536)보다 여유 있게 자른다.
MAX_COMMENT_LENGTH = 60000


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def format_plan_comment(plan: PlanResult) -> str:
    lines: List[str] = []
    lines.append(f"### Terraform plan: `{plan.environment}`")
    lines.append("")
    lines.append(f"**{plan.summary()}**")
    lines.append("")
    if plan.changes:
        for change in plan.changes:
            lines.append(f"- `{change.action}` {change.address}")
    else:
        lines.append("- 변경 사항 없음")
    lines.append("")
    lines.append("<details><summary>plan 출력</summary>")
    lines.append("")
    lines.append("```")
    header = "\n".join(lines)
    budget = MAX_COMMENT_LENGTH - len(header) - 200
    lines.append(_truncate(plan.diff, max(budget, 0)))
    lines.append("```")
    lines.append("</details>")
    lines.append("")
    lines.append("_plan 전용 실행입니다. apply 는 main 브랜치 머지 후 수행됩니다._")
    return "\n".join(lines)


def format_failure_comment(outcome: "DeploymentOutcome") -> str:
    err = outcome.error
    lines: List[str] = []
    lines.append(f"### 파이프라인 실패: `{outcome.environment}`")
    lines.append("")
    if err is not None:
        lines.append(f"- 단계: `{err.stage}`")
        lines.append(f"- 오류: {err.kind}: {err.message}")
        lines.append(f"- exit status: {err.exit_status if err.exit_status is not None else '(none)'}")
        lines.append(f"- 외부 리소스 변경 발생: {outcome.mutated}")
        if err.detail:
            lines.append("")
            lines.append("```")
            lines.append(_truncate(err.detail, MAX_COMMENT_LENGTH // 2))
            lines.append("```")
    return "\n".join(lines)


def post_pr_comment(
    cfg: PipelineConfig,
    pr_number: int,
    body: str,
    http_client: Optional[httpx.Client] = None,
) -> str:
    """
    PR 에 코멘트를 남기고 코멘트 URL 을 반환한다.
    """
    if not cfg.github_token:
        raise ReportError("GITHUB_TOKEN 이 없어 PR 코멘트를 남길 수 없습니다.")
    if not cfg.github_repository:
        raise ReportError("GITHUB_REPOSITORY 가 설정되지 않았습니다.")

    url = f"{cfg.github_api_url.rstrip('/')}/repos/{cfg.github_repository}/issues/{pr_number}/comments"
    headers = {
        "Authorization": f"Bearer {cfg.github_token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    logger.info("PR 코멘트 게시: %s#%d", cfg.github_repository, pr_number)

    client = http_client or httpx.Client(timeout=30.0)
    try:
        resp = client.post(url, json={"body": body}, headers=headers)
    except httpx.HTTPError as e:
        raise ReportError(f"GitHub API 에 연결할 수 없습니다: {e}") from e
    finally:
        if http_client is None:
            client.close()

    if resp.status_code != 201:
        raise ReportError(
            f"PR 코멘트 게시 실패 (HTTP {resp.status_code})",
            detail=resp.text[:500],
        )
    # 201 이면 게시 완료. 본문을 못 읽으면 URL 만 비운다.
    try:
        payload = resp.json()
    except ValueError:
        logger.warning("PR 코멘트 응답을 해석할 수 없습니다: %s", resp.text[:200])
        return ""
    return payload.get("html_url", "") if isinstance(payload, dict) else ""


def write_step_summary(text: str) -> bool:
    """
    GitHub Actions 의 job summary 파일에 내용을 덧붙인다. 러너 밖이면 아무것도 하지 않는다.
    """
    path = os.getenv("GITHUB_STEP_SUMMARY")
    if not path:
        return False
    with open(path, "a", encoding="utf-8") as f:
        f.write(text.rstrip() + "\n")
    return True
