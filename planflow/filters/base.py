# planflow/filters/base.py
import logging
from abc import ABC
from typing import Iterable

logger = logging.getLogger(__name__)


class JobFilter(ABC):
    def on_state_election(self, elect_state_context):
        pass  # Default implementation does nothing

    def on_state_applied(self, apply_state_context):
        pass  # Default implementation does nothing


def notify_state_applied(filters: Iterable[JobFilter], apply_state_context) -> None:
    """Run observer hooks; a failing observer never affects the job."""
    for f in filters:
        try:
            f.on_state_applied(apply_state_context)
        except Exception:
            logger.exception(
                f"Filter {type(f).__name__} failed for job {apply_state_context.job.id}"
            )
