from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, TypedDict

from forgeworks_common.db import JobStore
from forgeworks_common.schemas import ArtifactKind

logger = logging.getLogger("forgeworks_worker.job")


@dataclass
class JobContext:
    job_id: str
    store: JobStore

    def log(self, message: str):
        """Append to the job's audit trail and mirror it to the process log."""
        logger.info(message)
        self.store.append_log(self.job_id, message)


class CompositeState(TypedDict, total=False):
    ctx: JobContext
    kind: ArtifactKind
    name: str
    version: str
    scaffold_status: str
    scaffold_result: Dict[str, Any]
    deploy_result: Dict[str, Any]
