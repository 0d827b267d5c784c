"""
Error classes for forgeworks.

Permanent errors describe a request that will never succeed as submitted
(bad blueprint, unknown type, artifact conflicts). Transient errors describe
infrastructure that was unavailable (queue, object store, build service).
The pipeline retries neither: a failing job ends FAILED and is resubmitted by
hand. The split exists so callers (HTTP API, composite handlers, operators)
can tell the two apart.
"""


class ForgeError(Exception):
    """Base exception for forgeworks."""
    pass


class PermanentError(ForgeError):
    """Do not retry: the input itself is wrong."""
    pass


class TransientError(ForgeError):
    """Infrastructure failure; a resubmission may succeed."""
    pass


class InvalidRequest(PermanentError):
    pass


class UnknownBlueprintType(PermanentError):
    def __init__(self, blueprint_type):
        super().__init__(f"Unknown blueprint type: '{blueprint_type}'")
        self.blueprint_type = blueprint_type


class AlreadyExists(PermanentError):
    """Scaffold target is already populated."""
    pass


class ArtifactNotFound(PermanentError):
    pass


class TransportError(TransientError):
    pass


class PublishError(TransportError):
    def __init__(self, message: str, job_id: str = None):
        super().__init__(message)
        self.job_id = job_id


class BuildTriggerError(TransientError):
    pass


class ObjectStoreError(TransientError):
    pass


class InvalidTransition(ForgeError):
    """A job status change outside PENDING -> RUNNING -> {SUCCESS, FAILED}."""
    pass


class LaunchError(ForgeError):
    pass
