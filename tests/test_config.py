import logging

import pytest
from pydantic import ValidationError

from forgeworks_common.config import ServiceConfig
from forgeworks_common.errors import (
    AlreadyExists, BuildTriggerError, ForgeError, InvalidRequest, PermanentError, PublishError,
    TransientError, TransportError, UnknownBlueprintType,
)
from forgeworks_common.logging_config import JobIdLogFilter, job_context, logging_dict


class TestServiceConfig:

    def test_defaults(self):
        cfg = ServiceConfig.from_env({})
        assert cfg.visibility_timeout_s == 600
        assert cfg.publish_deploy_events is False
        assert cfg.api_key_file == ""

    def test_env_overrides(self):
        cfg = ServiceConfig.from_env({
            "DB_PATH": "/tmp/x.db",
            "VISIBILITY_TIMEOUT_S": "30",
            "PUBLISH_DEPLOY_EVENTS": "true",
            "REGION": "",
        })
        assert cfg.db_path == "/tmp/x.db"
        assert cfg.visibility_timeout_s == 30
        assert cfg.publish_deploy_events is True
        assert cfg.region == "us-central1"

    def test_rejects_tiny_visibility_timeout(self):
        with pytest.raises(ValidationError):
            ServiceConfig.from_env({"VISIBILITY_TIMEOUT_S": "1"})


class TestErrors:

    def test_hierarchy(self):
        assert issubclass(InvalidRequest, PermanentError)
        assert issubclass(AlreadyExists, PermanentError)
        assert issubclass(PublishError, TransportError)
        assert issubclass(TransportError, TransientError)
        assert issubclass(BuildTriggerError, TransientError)
        assert issubclass(PermanentError, ForgeError)

    def test_unknown_type_message(self):
        e = UnknownBlueprintType("nonexistent-type")
        assert str(e) == "Unknown blueprint type: 'nonexistent-type'"
        assert e.blueprint_type == "nonexistent-type"

    def test_publish_error_carries_job_id(self):
        assert PublishError("down", job_id="j1").job_id == "j1"


class TestLogging:

    def _record(self):
        return logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)

    def test_filter_uses_job_context(self):
        f = JobIdLogFilter()
        with job_context("j42"):
            rec = self._record()
            f.filter(rec)
        assert rec.job_id == "j42"

        rec = self._record()
        f.filter(rec)
        assert rec.job_id == "-"

    def test_logging_dict(self):
        cfg = logging_dict("DEBUG")
        assert cfg["root"]["level"] == "DEBUG"
        assert "%(job_id)s" in cfg["formatters"]["default"]["format"]
