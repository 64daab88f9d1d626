import json
import os
import signal
import sys
from typing import Optional

import click

from .config import PipelineConfig, load_env_files, load_environment
from .dispatcher import request_from_github_event
from .errors import PipelineError
from .github import write_step_summary
from .logging_utils import get_logger, setup_logging
from .models import DeploymentRequest, TriggerKind
from .orchestrator import PipelineRun, check_all, describe_run, format_outcome, skipped_outcome


logger = get_logger(__name__)

EVENT_CHOICES = [kind.value for kind in TriggerKind]


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다.",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """Terraform + Artifact Registry + Cloud Run 배포 파이프라인 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> PipelineConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = PipelineConfig.from_env()
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _request_options(func):  # noqa: ANN001, ANN202
    options = [
        click.option("--event", type=click.Choice(EVENT_CHOICES), default=None,
                     help="트리거 종류. 생략하면 GitHub Actions 환경변수(GITHUB_EVENT_NAME 등)에서 읽습니다."),
        click.option("--ref", default="", help="git ref (예: refs/heads/main)"),
        click.option("--sha", default=None, help="커밋 SHA (production 이미지 태그로 사용)"),
        click.option("--pr-number", type=int, default=None, help="PR 번호 (pull_request)"),
        click.option("--base-ref", default=None, help="PR base 브랜치 (pull_request)"),
        click.option("--version", "version", default=None, help="배포 버전 (manual, 예: 0.0.1)"),
        click.option("--destroy/--no-destroy", default=None, help="배포 확인 후 환경 제거 여부 (manual)"),
        click.option("--environment", default=None, help="대상 환경 이름 (기본: 트리거별 설정값)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _resolve_request(
    cfg: PipelineConfig,
    *,
    event: Optional[str],
    ref: str,
    sha: Optional[str],
    pr_number: Optional[int],
    base_ref: Optional[str],
    version: Optional[str],
    destroy: Optional[bool],
    environment: Optional[str],
) -> Optional[DeploymentRequest]:
    if event is None:
        event_name = os.getenv("GITHUB_EVENT_NAME", "")
        event_path = os.getenv("GITHUB_EVENT_PATH")
        payload = {}
        if event_path and os.path.exists(event_path):
            with open(event_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        return request_from_github_event(
            cfg,
            event_name,
            payload,
            ref=os.getenv("GITHUB_REF", ""),
            sha=os.getenv("GITHUB_SHA"),
        )

    trigger = TriggerKind(event)
    default_env = {
        TriggerKind.PUSH: cfg.production_environment,
        TriggerKind.PULL_REQUEST: cfg.validation_environment,
        TriggerKind.MANUAL: cfg.sandbox_environment,
    }[trigger]
    return DeploymentRequest(
        trigger=trigger,
        environment=environment or default_env,
        ref=ref or (f"refs/heads/{cfg.production_branch}" if trigger == TriggerKind.PUSH else ""),
        version=version,
        destroy=destroy,
        pr_number=pr_number,
        base_ref=base_ref,
        commit_sha=sha,
    )


@main.command()
@_request_options
@click.pass_context
def plan(ctx: click.Context, **options) -> None:  # noqa: ANN003
    """요청이 어떤 variant/단계로 실행될지 출력 (외부 호출 없음)"""
    try:
        cfg = _load_config_from_ctx(ctx)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)

    request = _resolve_request(cfg, **options)
    if request is None:
        click.echo("처리 대상이 아닌 이벤트입니다. (skipped)")
        return

    try:
        click.echo(describe_run(cfg, request))
    except PipelineError as e:
        click.echo(f"[ERROR] {e.describe()}", err=True)
        sys.exit(1)


@main.command(name="run")
@_request_options
@click.pass_context
def run(ctx: click.Context, **options) -> None:  # noqa: ANN003
    """파이프라인을 실제로 실행 (인증 -> plan -> apply/코멘트 -> 이미지 -> 배포)"""
    try:
        cfg = _load_config_from_ctx(ctx)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)

    request = _resolve_request(cfg, **options)
    if request is None:
        outcome = skipped_outcome("처리 대상이 아닌 이벤트")
    else:
        pipeline = PipelineRun(cfg, request, base_dir=ctx.obj["chdir"])

        # GitHub 가 run 을 취소하면 SIGINT/SIGTERM 이 온다.
        def _on_signal(signum, frame) -> None:  # noqa: ANN001, ARG001
            pipeline.cancel()

        signal.signal(signal.SIGTERM, _on_signal)
        signal.signal(signal.SIGINT, _on_signal)

        try:
            outcome = pipeline.execute()
        except Exception as e:  # noqa: BLE001
            logger.exception("파이프라인 실행 중 오류 발생")
            click.echo(f"[ERROR] 파이프라인 실패: {e}", err=True)
            sys.exit(1)

    summary = format_outcome(outcome)
    click.echo(summary)
    write_step_summary(summary)

    if not outcome.succeeded:
        sys.exit(1)


@main.command()
@click.option("--environment", default=None, help="점검할 환경 이름 (기본: PRODUCTION_ENVIRONMENT)")
@click.pass_context
def check(ctx: click.Context, environment: Optional[str]) -> None:
    """
    배포 전에 도구 설치 여부와 GCP 리소스 상태를 점검한다.
    (실제 리소스 생성/변경은 하지 않는다)
    """
    base_dir: str = ctx.obj["chdir"]
    try:
        cfg = _load_config_from_ctx(ctx)
        env_cfg = load_environment(cfg, environment or cfg.production_environment, base_dir)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)

    try:
        report, has_issues = check_all(cfg, env_cfg, base_dir=base_dir)
    except Exception as e:  # noqa: BLE001
        logger.exception("사전 체크 중 오류 발생")
        click.echo(f"[ERROR] 체크 실패: {e}", err=True)
        sys.exit(1)

    click.echo(report)

    # 치명적인 이슈가 있으면 exit 1 로 종료하여 CI 등에서 감지 가능하게 한다.
    if has_issues:
        sys.exit(1)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    현재 디렉토리에 설정 템플릿(.env.pipeline.example, environments/*.env.example)을 복사한다.
    """
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]
    templates = {
        "env.pipeline.example": ".env.pipeline.example",
        "production.env.example": os.path.join("environments", "production.env.example"),
        "sandbox.env.example": os.path.join("environments", "sandbox.env.example"),
    }

    for name, relative in templates.items():
        target = os.path.join(base_dir, relative)
        if os.path.exists(target):
            click.echo(f"{relative} 이(가) 이미 존재하여 건너뜀")
            continue
        os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
        try:
            with resources.files("deploy_pipeline.examples").joinpath(name).open("r", encoding="utf-8") as src, open(
                target, "w", encoding="utf-8"
            ) as dst:
                dst.write(src.read())
            click.echo(f"{relative} 템플릿을 생성했습니다.")
        except FileNotFoundError:
            click.echo(f"템플릿 {name} 을(를) 패키지에서 찾을 수 없습니다.", err=True)
