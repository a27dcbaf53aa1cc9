from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

TRUTHY = {"1", "true", "yes", "on"}


def _load_env_files() -> None:
    root = Path(__file__).resolve().parents[2]
    candidates = [
        root / ".env",
        root / ".env.local",
    ]
    for path in candidates:
        if path.exists():
            load_dotenv(path, override=False)


_load_env_files()


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    project_root: Path
    logs_root: Path
    environment: str
    aws_region: str
    table_name: str
    s3_bucket: str
    allow_tenant_header: bool
    trusted_tenant_header: str
    cors_origins: list[str]
    polly_voice_id: str
    polly_engine: str
    bedrock_model_id: str
    use_mock_polly: bool
    use_mock_bedrock: bool
    use_mock_video: bool
    orchestrator: str
    state_machine_arn: str
    ecs_cluster: str
    ecs_task_family: str
    ecs_container_name: str
    ecs_subnets: list[str]
    ecs_security_groups: list[str]
    presign_seconds: int
    video_poll_seconds: float
    video_poll_timeout_seconds: float

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        root = Path(__file__).resolve().parents[2]
        environment = os.getenv("APP_ENV", "development").strip().lower()
        s3_bucket = os.getenv("S3_BUCKET_NAME") or os.getenv("S3_BUCKET", "")
        subnets = _env_list("ECS_SUBNETS")
        security_groups = _env_list("ECS_SECURITY_GROUPS")
        return cls(
            project_root=root,
            logs_root=Path(os.getenv("LOGS_ROOT", str(root / "logs"))),
            environment=environment,
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            table_name=os.getenv("DYNAMODB_TABLE_NAME") or os.getenv("TABLE_NAME", "VideoSaaS"),
            s3_bucket=s3_bucket,
            allow_tenant_header=env_flag("ALLOW_TENANT_HEADER", default=environment != "production"),
            trusted_tenant_header=os.getenv("TRUSTED_TENANT_HEADER", "").strip().lower(),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            polly_voice_id=os.getenv("POLLY_VOICE_ID", "Matthew"),
            polly_engine=os.getenv("POLLY_ENGINE", "neural"),
            bedrock_model_id=os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-sonnet-20240229-v1:0"),
            use_mock_polly=env_flag("USE_MOCK_POLLY") or not s3_bucket,
            use_mock_bedrock=env_flag("USE_MOCK_BEDROCK") or not s3_bucket,
            use_mock_video=env_flag("USE_MOCK_VIDEO") or not s3_bucket or not subnets or not security_groups,
            orchestrator=os.getenv("ORCHESTRATOR", "local").strip().lower(),
            state_machine_arn=os.getenv("STATE_MACHINE_ARN", ""),
            ecs_cluster=os.getenv("ECS_CLUSTER_NAME", "video-saas-cluster"),
            ecs_task_family=os.getenv("ECS_TASK_FAMILY", "video-saas-recorder"),
            ecs_container_name=os.getenv("ECS_CONTAINER_NAME", "video-recorder"),
            ecs_subnets=subnets,
            ecs_security_groups=security_groups,
            presign_seconds=int(os.getenv("PRESIGN_SECONDS", "3600")),
            video_poll_seconds=float(os.getenv("VIDEO_POLL_SECONDS", "15")),
            video_poll_timeout_seconds=float(os.getenv("VIDEO_POLL_TIMEOUT_SECONDS", "1800")),
        )


SETTINGS = Settings.from_env()
