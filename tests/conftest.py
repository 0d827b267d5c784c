import pytest

from forgeworks_api.submission import SubmissionService
from forgeworks_common.db import DeployCache, JobStore
from forgeworks_common.errors import BuildTriggerError
from forgeworks_common.queue import InMemoryTransport
from forgeworks_common.storage import LocalObjectStore
from forgeworks_worker.dispatcher import Dispatcher
from forgeworks_worker.jobs import DeployHandler, ScaffoldHandler
from forgeworks_worker.state import JobContext
from forgeworks_worker.worker import Worker

JOBS_TOPIC = "test-jobs"
JOBS_SUB = "test-worker-sub"


class FakeBuildTrigger:
    """Records every build request; optionally fails like an unavailable build service."""

    def __init__(self, fail: bool = False):
        self.requests = []
        self.fail = fail

    def trigger(self, req):
        self.requests.append(req)
        if self.fail:
            raise BuildTriggerError("build service unavailable")
        return f"operations/build-{len(self.requests)}"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "forgeworks.db")


@pytest.fixture
def store(db_path):
    return JobStore(db_path)


@pytest.fixture
def cache(db_path):
    return DeployCache(db_path)


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStore(str(tmp_path / "objects"), "test-bucket")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport(clock):
    t = InMemoryTransport(visibility_timeout=60, poll_interval=0.01, clock=clock)
    t.ensure_subscription(JOBS_TOPIC, JOBS_SUB)
    return t


@pytest.fixture
def builds():
    return FakeBuildTrigger()


@pytest.fixture
def scaffold(storage):
    return ScaffoldHandler(storage)


@pytest.fixture
def deploy(storage, cache, builds):
    return DeployHandler(storage, cache, builds)


@pytest.fixture
def dispatcher(store, scaffold, deploy):
    return Dispatcher(store, scaffold, deploy)


@pytest.fixture
def submission(store, transport):
    return SubmissionService(store, transport, JOBS_TOPIC)


@pytest.fixture
def worker(store, transport, dispatcher):
    return Worker(store, transport, dispatcher, JOBS_SUB, poll_timeout=0)


@pytest.fixture
def ctx(store):
    store.create_job("job-1", {"type": "scaffold-function", "name": "alpha"})
    return JobContext("job-1", store)
