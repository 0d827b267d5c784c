import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

ENV_VARS = {
    "db_path": "DB_PATH",
    "redis_url": "REDIS_URL",
    "queue_prefix": "QUEUE_PREFIX",
    "jobs_topic": "JOBS_TOPIC",
    "jobs_subscription": "JOBS_SUBSCRIPTION",
    "events_topic": "EVENTS_TOPIC",
    "launcher_subscription": "LAUNCHER_SUBSCRIPTION",
    "visibility_timeout_s": "VISIBILITY_TIMEOUT_S",
    "poll_interval_s": "POLL_INTERVAL_S",
    "object_store_root": "OBJECT_STORE_ROOT",
    "workspace_bucket": "WORKSPACE_BUCKET",
    "build_service_url": "BUILD_SERVICE_URL",
    "build_service_token_file": "BUILD_SERVICE_TOKEN_FILE",
    "region": "REGION",
    "api_key_file": "API_KEY_FILE",
    "publish_deploy_events": "PUBLISH_DEPLOY_EVENTS",
    "launcher_workdir": "LAUNCHER_WORKDIR",
    "docker_network": "DOCKER_NETWORK",
    "launcher_image": "LAUNCHER_IMAGE",
    "log_level": "LOG_LEVEL",
}


class ServiceConfig(BaseModel):
    db_path: str = "/data/forgeworks.db"
    redis_url: str = "redis://redis:6379/0"
    queue_prefix: str = "forgeworks"
    jobs_topic: str = "forgeworks-jobs"
    jobs_subscription: str = "forgeworks-worker-sub"
    events_topic: str = "forgeworks-builds"
    launcher_subscription: str = "forgeworks-local-launcher-sub"
    visibility_timeout_s: int = Field(default=600, ge=10, description="Lease before an unacked message is redelivered.")
    poll_interval_s: float = Field(default=1.0, gt=0)
    object_store_root: str = "/data/objects"
    workspace_bucket: str = "forgeworks-bucket"
    build_service_url: str = ""
    build_service_token_file: str = ""
    region: str = "us-central1"
    api_key_file: str = Field(default="", description="Empty disables API key auth.")
    publish_deploy_events: bool = False
    launcher_workdir: str = "/tmp/forgeworks-services"
    docker_network: str = "forgeworks_default"
    launcher_image: str = "python:3.12-slim"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        values = {field: env[var] for field, var in ENV_VARS.items() if env.get(var, "") != ""}
        return cls(**values)
