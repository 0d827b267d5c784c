from unittest.mock import MagicMock

import pytest
import requests

from forgeworks_common.builds import HttpBuildTrigger, build_headers
from forgeworks_common.errors import BuildTriggerError
from forgeworks_common.schemas import BuildRequest

REQ = BuildRequest(name="alpha", target="cloudfunctions", source="file:///b/functions/alpha/source-vlatest.zip")


def _session(status=200, payload=None):
    resp = MagicMock(status_code=status, text="")
    resp.json.return_value = payload if payload is not None else {}
    session = MagicMock()
    session.post.return_value = resp
    return session


class TestHttpBuildTrigger:

    def test_returns_operation_name(self):
        session = _session(payload={"name": "operations/123"})
        trigger = HttpBuildTrigger("http://builds.local/", session=session)

        assert trigger.trigger(REQ) == "operations/123"

        args, kwargs = session.post.call_args
        assert args[0] == "http://builds.local/v1/builds"
        assert kwargs["json"]["source"] == REQ.source
        assert "Authorization" not in kwargs["headers"]

    def test_token_file_adds_bearer(self, tmp_path):
        token = tmp_path / "token"
        token.write_text("s3cret\n")
        session = _session(payload={"operation": "op-1"})

        HttpBuildTrigger("http://builds.local", token_file=str(token), session=session).trigger(REQ)

        assert session.post.call_args.kwargs["headers"]["Authorization"] == "Bearer s3cret"

    def test_http_error(self):
        trigger = HttpBuildTrigger("http://builds.local", session=_session(status=500))
        with pytest.raises(BuildTriggerError, match="500"):
            trigger.trigger(REQ)

    def test_connection_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(BuildTriggerError):
            HttpBuildTrigger("http://builds.local", session=session).trigger(REQ)

    def test_missing_operation_name(self):
        with pytest.raises(BuildTriggerError):
            HttpBuildTrigger("http://builds.local", session=_session(payload={})).trigger(REQ)

    def test_unconfigured(self):
        with pytest.raises(BuildTriggerError, match="not configured"):
            HttpBuildTrigger("", session=MagicMock()).trigger(REQ)

    def test_build_headers(self):
        assert build_headers("") == {"Accept": "application/json"}
        assert build_headers("t")["Authorization"] == "Bearer t"
