import logging
import logging.config
from contextlib import contextmanager
from contextvars import ContextVar

# Job currently being processed by this thread of control
job_id_var: ContextVar[str] = ContextVar("job_id", default="-")


class JobIdLogFilter(logging.Filter):
    """Puts 'job_id' on every record so the formatter can use %(job_id)s."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "job_id", None):
            record.job_id = job_id_var.get()
        return True


@contextmanager
def job_context(job_id: str):
    token = job_id_var.set(job_id or "-")
    try:
        yield
    finally:
        job_id_var.reset(token)


def logging_dict(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,  # keep uvicorn/fastapi loggers
        "filters": {
            "job": {"()": "forgeworks_common.logging_config.JobIdLogFilter"},
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [job=%(job_id)s] %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "filters": ["job"],
                "formatter": "default",
            },
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            "uvicorn.error": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": level, "handlers": ["console"], "propagate": False},
        },
    }


def setup_logging(level: str = "INFO"):
    logging.config.dictConfig(logging_dict(level.upper()))
