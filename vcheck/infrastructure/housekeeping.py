import logging
from typing import Optional
from vcheck.domain.models import CheckMode
from vcheck.infrastructure.job_store import JobStore

class HousekeepingService:
    """Startup reconciliation of state left behind by an abnormal exit."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def recover_abandoned_jobs(self, store: JobStore, mode: Optional[CheckMode] = None) -> int:
        """Returns PROCESSING jobs with no live worker to PENDING.

        Must run before any worker starts, otherwise those rows are never
        claimed again.
        """
        recovered = store.reset_processing_jobs(mode)
        if recovered:
            scope = mode.value if mode else "all modes"
            self.logger.warning(f"Recovered {recovered} abandoned processing jobs ({scope})")
        return recovered
