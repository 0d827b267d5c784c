from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# The only valid edges of the job state machine.
TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.SUCCESS, JobStatus.FAILED},
    JobStatus.SUCCESS: set(),
    JobStatus.FAILED: set(),
}


class Action(str, Enum):
    SCAFFOLD = "scaffold"
    DEPLOY = "deploy"
    CREATE_AND_DEPLOY = "create-and-deploy"


class ArtifactKind(str, Enum):
    FUNCTION = "function"
    RUN_SERVICE = "run-service"

    @property
    def prefix(self) -> str:
        return _KIND_PREFIX[self]

    @property
    def target(self) -> str:
        return _KIND_TARGET[self]

    @property
    def label(self) -> str:
        return _KIND_LABEL[self]

    def root(self, name: str) -> str:
        return f"{self.prefix}{name}/"


_KIND_PREFIX = {ArtifactKind.FUNCTION: "functions/", ArtifactKind.RUN_SERVICE: "runs/"}
_KIND_TARGET = {ArtifactKind.FUNCTION: "cloudfunctions", ArtifactKind.RUN_SERVICE: "cloudrun"}
_KIND_LABEL = {ArtifactKind.FUNCTION: "function", ArtifactKind.RUN_SERVICE: "run service"}


class BlueprintType(str, Enum):
    SCAFFOLD_FUNCTION = "scaffold-function"
    SCAFFOLD_RUN_SERVICE = "scaffold-run-service"
    DEPLOY_FUNCTION = "deploy-function"
    DEPLOY_RUN_SERVICE = "deploy-run-service"
    CREATE_AND_DEPLOY_FUNCTION = "create-and-deploy-function"
    CREATE_AND_DEPLOY_RUN_SERVICE = "create-and-deploy-run-service"

    @property
    def action(self) -> Action:
        return _BLUEPRINT_ROUTES[self][0]

    @property
    def kind(self) -> ArtifactKind:
        return _BLUEPRINT_ROUTES[self][1]


_BLUEPRINT_ROUTES = {
    BlueprintType.SCAFFOLD_FUNCTION: (Action.SCAFFOLD, ArtifactKind.FUNCTION),
    BlueprintType.SCAFFOLD_RUN_SERVICE: (Action.SCAFFOLD, ArtifactKind.RUN_SERVICE),
    BlueprintType.DEPLOY_FUNCTION: (Action.DEPLOY, ArtifactKind.FUNCTION),
    BlueprintType.DEPLOY_RUN_SERVICE: (Action.DEPLOY, ArtifactKind.RUN_SERVICE),
    BlueprintType.CREATE_AND_DEPLOY_FUNCTION: (Action.CREATE_AND_DEPLOY, ArtifactKind.FUNCTION),
    BlueprintType.CREATE_AND_DEPLOY_RUN_SERVICE: (Action.CREATE_AND_DEPLOY, ArtifactKind.RUN_SERVICE),
}


class Job(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: JobStatus
    blueprint: Dict[str, Any]
    received_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class BuildRequest(BaseModel):
    name: str
    target: str = Field(..., description="cloudfunctions | cloudrun")
    source: str = Field(..., description="Location of the packaged source bundle.")
    region: str = "us-central1"


class DeploymentEvent(BaseModel):
    """Message on the deployment-event topic; older publishers used 'event'/'service'."""

    type: str = Field(default="", validation_alias=AliasChoices("type", "event"))
    name: str = Field(default="", validation_alias=AliasChoices("name", "service"))
