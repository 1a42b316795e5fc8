from core.job_manager import JobManager
from typing import Optional

job_manager: Optional[JobManager] = None

def init_globals(**overrides):
    """Creates the process-wide JobManager. Keyword arguments go to its constructor."""
    global job_manager
    job_manager = JobManager(**overrides)
    return job_manager
