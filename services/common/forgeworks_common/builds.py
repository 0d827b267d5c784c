import logging

import requests

from .errors import BuildTriggerError
from .schemas import BuildRequest
from .utils import read_secret

logger = logging.getLogger(__name__)


def build_headers(token: str) -> dict:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class HttpBuildTrigger:
    """
    Client for the external build service.

    trigger() is fire-and-forget: it returns the operation name of the build
    the service accepted and never waits for the build to finish.
    """

    def __init__(self, base_url: str, token_file: str = "", session: requests.Session = None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.token_file = token_file
        self.session = session or requests.Session()
        self.timeout = timeout

    def trigger(self, req: BuildRequest) -> str:
        if not self.base_url:
            raise BuildTriggerError("Build service URL is not configured (BUILD_SERVICE_URL)")
        token = read_secret(self.token_file) if self.token_file else ""
        url = f"{self.base_url}/v1/builds"
        try:
            r = self.session.post(url, headers=build_headers(token), json=req.model_dump(), timeout=self.timeout)
        except requests.RequestException as e:
            raise BuildTriggerError(f"Build service POST {url} failed: {e}") from e
        if r.status_code >= 400:
            raise BuildTriggerError(f"Build service POST {url} -> {r.status_code} {r.text}")
        data = r.json()
        operation = data.get("name") or data.get("operation")
        if not operation:
            raise BuildTriggerError(f"Build service response has no operation name: {data}")
        logger.info("Build %s started for %s (%s)", operation, req.name, req.target)
        return operation
