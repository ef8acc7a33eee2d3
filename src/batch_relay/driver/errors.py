"""Exception hierarchy for the job driver.

Item-level errors (SubmitError, PollError) are raised by remote
collaborators and captured onto the item; they never escape a pass.
DriverInvariantError and JobNotFoundError indicate corrupted or missing
external state and abort the pass.
"""


class BatchRelayError(Exception):
    """Base class for all batch-relay errors."""


class SubmitError(BatchRelayError):
    """Remote side rejected or failed a submission."""


class PollError(BatchRelayError):
    """Remote side failed while reporting status for a handle."""


class DriverInvariantError(BatchRelayError):
    """Pass was invoked with state that contradicts the stored job."""


class JobNotFoundError(BatchRelayError):
    """No stored job matches the requested identity."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ConfigError(BatchRelayError):
    """Configuration or job file failed validation."""


class PassNotClaimableError(BatchRelayError):
    """A job's pending pass is held by another worker, or none is scheduled."""

    def __init__(self, job_id: str):
        super().__init__(
            f"No claimable pass for job {job_id} (another worker is running it, "
            "or no pass is scheduled)"
        )
        self.job_id = job_id
