"""
api/jobs.py

Background jobs for the mutating endpoints.

/apply and /destroy answer 202 straight away and run the executor in a
daemon thread. Each job carries:
  - log_queue    drained by WS /ws/{job_id}; a final None marks the end
  - logs         every line so far, for GET /jobs/{job_id} and late joiners
  - cancel_event handed to apply_plan as `cancel=`

Jobs live in memory for the life of the server process. Registration is
locked; readers go without a lock and may see a slightly stale job.
"""

import queue
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from api.middleware import job_slots
from api.schemas import JobStatus

_FINISHED = (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class Job:
    """One async apply or destroy."""

    def __init__(self, operation: str, caller_ip: str = "unknown"):
        self.job_id:       str             = str(uuid.uuid4())
        self.operation:    str             = operation
        self.caller_ip:    str             = caller_ip
        self.created_at:   str             = datetime.now(timezone.utc).isoformat()
        self.status:       JobStatus       = JobStatus.PENDING
        self.logs:         List[str]       = []
        self.log_queue:    queue.Queue     = queue.Queue()
        self.cancel_event: threading.Event = threading.Event()
        self.result:       Optional[dict]  = None
        self.error:        Optional[str]   = None

    @property
    def finished(self) -> bool:
        return self.status in _FINISHED

    @property
    def message(self) -> str:
        if self.status is JobStatus.PENDING:
            return f"{self.operation} job queued."
        if self.status is JobStatus.RUNNING:
            if self.cancel_event.is_set():
                return f"{self.operation} is stopping after in-flight resources…"
            return f"{self.operation} is running…"
        if self.status is JobStatus.SUCCEEDED:
            return f"{self.operation} completed successfully."
        if self.status is JobStatus.CANCELLED:
            return f"{self.operation} was cancelled."
        return f"{self.operation} failed: {self.error}"

    def emit(self, line: str) -> None:
        """The `log=` callable handed to the executor."""
        self.logs.append(line)
        self.log_queue.put(line)

    def cancel(self) -> bool:
        """Ask the executor to stop. False if the job already finished."""
        if self.finished:
            return False
        self.cancel_event.set()
        return True

    def complete(self, result: Optional[dict]) -> None:
        """Final status from an apply report dict."""
        self.result = result
        if result and result.get("cancelled"):
            self.status = JobStatus.CANCELLED
        elif result and result.get("succeeded") is False:
            self.error = "one or more resources failed or were skipped"
            self.status = JobStatus.FAILED
        else:
            self.status = JobStatus.SUCCEEDED


class JobStore:
    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, operation: str, caller_ip: str = "unknown") -> Job:
        job = Job(operation, caller_ip=caller_ip)
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def all(self) -> List[Job]:
        """Newest first."""
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)


job_store = JobStore()


def _run_job(job: Job, fn: Callable[..., Optional[dict]], *args, **kwargs) -> None:
    job.status = JobStatus.RUNNING
    try:
        job.complete(fn(*args, log=job.emit, cancel=job.cancel_event, **kwargs))
    except Exception as exc:
        job.error = str(exc)
        job.status = JobStatus.FAILED
    finally:
        job.log_queue.put(None)
        job_slots.release(job.caller_ip)


def launch_job(operation: str, fn: Callable[..., Optional[dict]], *args,
               caller_ip: str = "unknown", **kwargs) -> Job:
    """
    Register a job and start `fn` in a daemon thread.

    fn is called as fn(*args, log=..., cancel=..., **kwargs) and should
    return an apply report dict (ApplyReport.to_dict()).
    """
    job = job_store.create(operation, caller_ip=caller_ip)
    threading.Thread(
        target=_run_job,
        args=(job, fn, *args),
        kwargs=kwargs,
        daemon=True,
        name=f"job-{job.job_id[:8]}",
    ).start()
    return job
