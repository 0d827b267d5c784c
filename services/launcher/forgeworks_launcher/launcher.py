"""
Local service launcher.

Listens on the deployment-event topic and, for every "service deployed"
event, makes sure a local container is running the service's current source
from the object store. Every message is acked on receipt whatever the outcome;
a failed launch is logged, not redelivered.
"""
import json, logging, shutil, signal, subprocess
from pathlib import Path

from pydantic import ValidationError

from forgeworks_common.config import ServiceConfig
from forgeworks_common.errors import ForgeError, InvalidRequest, LaunchError, TransientError
from forgeworks_common.logging_config import setup_logging
from forgeworks_common.queue import Delivery, RedisTransport, Transport
from forgeworks_common.schemas import ArtifactKind, DeploymentEvent
from forgeworks_common.storage import LocalObjectStore
from forgeworks_common.utils import run_cmd, sleep_s

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "forgeworks-local-service-"
DEPLOY_EVENT_TYPES = {"SERVICE_DEPLOYED", "DEPLOY_RUN_SERVICE", "deploy-run-service"}
SERVICE_PORT = "8080/tcp"


def container_name(name: str) -> str:
    return f"{CONTAINER_PREFIX}{name}"


def parse_event(delivery: Delivery) -> DeploymentEvent:
    raw = delivery.data.decode("utf-8", errors="replace").strip()
    if not raw:
        raise InvalidRequest("empty message")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"message is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidRequest("message is not an object")
    try:
        return DeploymentEvent.model_validate(data)
    except ValidationError as e:
        raise InvalidRequest(f"bad deployment event: {e}") from e


class ServiceLauncher:
    def __init__(self, storage: LocalObjectStore, transport: Transport, subscription: str,
                 workdir: str, network: str, image: str,
                 port_attempts: int = 40, port_interval_s: float = 0.25, runner=run_cmd):
        self.storage = storage
        self.transport = transport
        self.subscription = subscription
        self.workdir = Path(workdir)
        self.network = network
        self.image = image
        self.port_attempts = port_attempts
        self.port_interval_s = port_interval_s
        self.runner = runner
        self._running = False

    def handle(self, delivery: Delivery):
        try:
            event = parse_event(delivery)
            if event.type not in DEPLOY_EVENT_TYPES:
                logger.info("Ignoring message type: %s", event.type or "(none)")
                return None
            if not event.name:
                raise InvalidRequest("missing service name")
            return self.ensure_running(event.name)
        except InvalidRequest as e:
            logger.error("Bad message %s: %s", delivery.message_id, e)
        except (ForgeError, RuntimeError, subprocess.SubprocessError, OSError) as e:
            logger.error("Launch failed for message %s: %s", delivery.message_id, e)
        finally:
            delivery.ack()
        return None

    def is_running(self, name: str) -> bool:
        out = self.runner(["docker", "ps", "-q", "-f", f"name=^/{container_name(name)}$"])
        return bool(out.strip())

    def ensure_running(self, name: str):
        if self.is_running(name):
            logger.info("%s already running; ignoring", name)
            return None
        logger.info("Deploy event for '%s'; starting local service...", name)
        return self.start(name)

    def materialize(self, name: str) -> Path:
        root = ArtifactKind.RUN_SERVICE.root(name)
        keys = [k for k in self.storage.list(root) if not k.endswith(".zip")]
        if not keys:
            raise LaunchError(f"No source for service '{name}' under {root}")
        dest = self.workdir / name
        if dest.exists():
            shutil.rmtree(dest)
        for k in keys:
            out = dest / k[len(root):]
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(self.storage.read_bytes(k))
        return dest

    def start(self, name: str) -> str:
        container = container_name(name)
        src = self.materialize(name)
        try:
            self.runner(["docker", "rm", "-f", container])
        except RuntimeError:
            logger.debug("No stale container %s to remove", container)
        self.runner([
            "docker", "run", "-d",
            "--name", container,
            "--network", self.network,
            "-v", f"{src.resolve()}:/app",
            "-w", "/app",
            "-e", f"SVC_NAME={name}",
            "-e", "PORT=8080",
            "-p", "0:8080",
            self.image,
            "sh", "-c", "pip install -q -r requirements.txt && python main.py",
        ])
        port = self.wait_for_port(container)
        logger.info("STARTED %s on http://localhost:%s (container :8080)", name, port)
        return port

    def wait_for_port(self, container: str) -> str:
        for _ in range(self.port_attempts):
            try:
                line = self.runner(["docker", "port", container, SERVICE_PORT]).strip().splitlines()
                port = line[0].rsplit(":", 1)[-1].strip() if line else ""
                if port:
                    return port
            except RuntimeError:
                logger.debug("Port for %s not published yet", container)
            sleep_s(self.port_interval_s)
        try:
            logs = self.runner(["docker", "logs", "--tail", "200", container])
        except RuntimeError as e:
            logs = f"(could not read container logs: {e})"
        raise LaunchError(f"{container} started but no published port found.\n{logs}")

    def run(self, poll_timeout: float = 5.0):
        self._running = True
        logger.info("Listening on %s...", self.subscription)
        while self._running:
            try:
                delivery = self.transport.pull(self.subscription, timeout=poll_timeout)
            except TransientError as e:
                logger.error("Pull from %s failed: %s", self.subscription, e)
                sleep_s(self.transport.poll_interval)
                continue
            if delivery is None:
                continue
            try:
                self.handle(delivery)
            except Exception:
                logger.exception("Could not process message %s", delivery.message_id)

    def stop(self, *_args):
        self._running = False


def main():
    config = ServiceConfig.from_env()
    setup_logging(config.log_level)
    transport = RedisTransport.from_url(
        config.redis_url, prefix=config.queue_prefix,
        visibility_timeout=config.visibility_timeout_s, poll_interval=config.poll_interval_s,
    )
    transport.ensure_subscription(config.events_topic, config.launcher_subscription)
    launcher = ServiceLauncher(
        LocalObjectStore(config.object_store_root, config.workspace_bucket),
        transport, config.launcher_subscription,
        workdir=config.launcher_workdir, network=config.docker_network, image=config.launcher_image,
    )
    signal.signal(signal.SIGTERM, launcher.stop)
    signal.signal(signal.SIGINT, launcher.stop)
    launcher.run()


if __name__ == "__main__":
    main()
