"""
Job correlation over the shared connection.

- registry:   listener bookkeeping and the pending-job index
- correlator: one request, one reply
- streaming:  one request, many tagged chunks
"""

from sandbox_sdk.jobs.correlator import JobCorrelator
from sandbox_sdk.jobs.registry import Job, ListenerRegistry, PendingJobs
from sandbox_sdk.jobs.streaming import (
    RawStreamResult,
    StreamCallbacks,
    StreamingJobCorrelator,
    StreamOutcome,
    apply_output_line,
)

__all__ = [
    "Job",
    "JobCorrelator",
    "ListenerRegistry",
    "PendingJobs",
    "RawStreamResult",
    "StreamCallbacks",
    "StreamingJobCorrelator",
    "StreamOutcome",
    "apply_output_line",
]
