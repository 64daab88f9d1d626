"""
deploy_pipeline
---------------

GitHub Actions 워크플로우(프로덕션 배포, PR 검증, 샌드박스 배포)를
하나의 파이프라인으로 실행하는 배포 오케스트레이터 패키지.
Workload Identity Federation 으로 받은 단기 토큰으로 Terraform plan/apply,
Artifact Registry 이미지 푸시, Cloud Run 배포를 순서대로 수행한다.
"""

__all__ = [
    "config",
    "dispatcher",
    "orchestrator",
]
