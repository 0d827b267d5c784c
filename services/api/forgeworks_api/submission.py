import logging, uuid

from forgeworks_common.db import JobStore
from forgeworks_common.errors import InvalidRequest, PublishError
from forgeworks_common.queue import Transport

logger = logging.getLogger(__name__)


def validate_blueprint(blueprint) -> dict:
    """Only the envelope is checked here; type-specific fields fail the job in the worker."""
    if not isinstance(blueprint, dict):
        raise InvalidRequest("Request body must be a valid blueprint with a 'type'.")
    btype = blueprint.get("type")
    if not isinstance(btype, str) or not btype.strip():
        raise InvalidRequest("Request body must be a valid blueprint with a 'type'.")
    return blueprint


class SubmissionService:
    def __init__(self, store: JobStore, transport: Transport, topic: str):
        self.store = store
        self.transport = transport
        self.topic = topic

    def submit(self, blueprint) -> str:
        blueprint = validate_blueprint(blueprint)
        job_id = str(uuid.uuid4())
        self.store.create_job(job_id, blueprint)
        try:
            self.transport.publish_json(self.topic, {"jobId": job_id})
        except PublishError as e:
            # the record stays PENDING with nothing in flight; no rollback
            logger.error("Job %s stored but not queued: %s", job_id, e)
            raise PublishError(f"Job {job_id} was stored but could not be queued: {e}", job_id=job_id) from e
        logger.info("Created and dispatched job %s (%s)", job_id, blueprint["type"])
        return job_id
