"""
Worker consumption loop.

The transport delivers at least once; this loop makes processing effectively
at most once per job. A job is only executed by the worker that wins the
PENDING -> RUNNING compare-and-set in the job store, and every other delivery
of the same job id is acknowledged and dropped.
"""
import json, logging, signal

from forgeworks_common.builds import HttpBuildTrigger
from forgeworks_common.config import ServiceConfig
from forgeworks_common.db import DeployCache, JobStore
from forgeworks_common.errors import PermanentError, TransientError
from forgeworks_common.logging_config import job_context, setup_logging
from forgeworks_common.queue import Delivery, RedisTransport, Transport
from forgeworks_common.schemas import JobStatus
from forgeworks_common.storage import LocalObjectStore
from forgeworks_common.utils import sleep_s

from .dispatcher import Dispatcher
from .jobs import DeployHandler, ScaffoldHandler

logger = logging.getLogger(__name__)

POISON = "poison"
MISSING = "missing"
DUPLICATE = "duplicate"
SUCCESS = "success"
FAILED = "failed"


def parse_job_id(delivery: Delivery):
    try:
        payload = delivery.json()
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    job_id = payload.get("jobId")
    if not isinstance(job_id, str) or not job_id:
        return None
    return job_id


class Worker:
    def __init__(self, store: JobStore, transport: Transport, dispatcher: Dispatcher,
                 subscription: str, poll_timeout: float = 5.0):
        self.store = store
        self.transport = transport
        self.dispatcher = dispatcher
        self.subscription = subscription
        self.poll_timeout = poll_timeout
        self._running = False

    def handle(self, delivery: Delivery) -> str:
        job_id = parse_job_id(delivery)
        if job_id is None:
            logger.warning("Dropping unparseable message %s: %r", delivery.message_id, delivery.data[:200])
            delivery.ack()
            return POISON

        with job_context(job_id):
            job = self.store.get_job(job_id)
            if job is None:
                logger.warning("Job %s not found; dropping message %s", job_id, delivery.message_id)
                delivery.ack()
                return MISSING
            if job.status != JobStatus.PENDING:
                logger.info("Job %s is already %s; dropping redelivery (attempt %d)",
                            job_id, job.status.value, delivery.attempt)
                delivery.ack()
                return DUPLICATE
            if not self.store.claim_job(job_id, "Worker started job."):
                logger.info("Job %s was claimed by another worker", job_id)
                delivery.ack()
                return DUPLICATE

            try:
                outputs = self.dispatcher.dispatch(job_id, job.blueprint)
            except PermanentError as e:
                logger.warning("Job %s failed: %s", job_id, e)
                self.store.fail_job(job_id, str(e))
                outcome = FAILED
            except Exception as e:
                logger.exception("Job %s failed", job_id)
                self.store.fail_job(job_id, str(e) or type(e).__name__)
                outcome = FAILED
            else:
                self.store.complete_job(job_id, outputs)
                logger.info("Job %s finished", job_id)
                outcome = SUCCESS

        # a FAILED job is a business outcome, not a delivery failure
        delivery.ack()
        return outcome

    def run(self, max_messages: int = None) -> int:
        """Pull and handle messages until stop() or max_messages; returns how many were handled."""
        self._running = True
        handled = 0
        logger.info("Listening for messages on %s...", self.subscription)
        while self._running:
            try:
                delivery = self.transport.pull(self.subscription, timeout=self.poll_timeout)
            except TransientError as e:
                logger.error("Pull from %s failed: %s", self.subscription, e)
                sleep_s(self.transport.poll_interval)
                continue
            if delivery is None:
                continue
            try:
                self.handle(delivery)
            except Exception:
                # left unacked; redelivery after the lease is caught by the status guard
                logger.exception("Could not process message %s", delivery.message_id)
            handled += 1
            if max_messages is not None and handled >= max_messages:
                break
        return handled

    def stop(self, *_args):
        self._running = False


def build_worker(config: ServiceConfig) -> Worker:
    store = JobStore(config.db_path)
    cache = DeployCache(config.db_path)
    transport = RedisTransport.from_url(
        config.redis_url, prefix=config.queue_prefix,
        visibility_timeout=config.visibility_timeout_s, poll_interval=config.poll_interval_s,
    )
    transport.ensure_subscription(config.jobs_topic, config.jobs_subscription)
    storage = LocalObjectStore(config.object_store_root, config.workspace_bucket)
    builds = HttpBuildTrigger(config.build_service_url, token_file=config.build_service_token_file)
    deploy = DeployHandler(
        storage, cache, builds, region=config.region,
        events=transport if config.publish_deploy_events else None,
        events_topic=config.events_topic,
    )
    dispatcher = Dispatcher(store, ScaffoldHandler(storage), deploy)
    return Worker(store, transport, dispatcher, config.jobs_subscription)


def main():
    config = ServiceConfig.from_env()
    setup_logging(config.log_level)
    worker = build_worker(config)
    signal.signal(signal.SIGTERM, worker.stop)
    signal.signal(signal.SIGINT, worker.stop)
    worker.run()


if __name__ == "__main__":
    main()
