"""Exception hierarchy for the generation flow."""

from typing import Optional


class GenerationError(Exception):
    """Base class for every error raised while generating."""

    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PrerequisiteMissing(GenerationError):
    """A required user setting (body shot, headshot...) is not configured."""

    retryable = False


class NoItemsSelected(GenerationError):
    retryable = False

    def __init__(self, message: str = "No items selected"):
        super().__init__(message)


class PhaseFailed(GenerationError):
    """A preprocessing phase failed; nothing was submitted."""

    def __init__(self, phase: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.phase = phase
        self.cause = cause


class SubmitFailed(GenerationError):
    pass


class JobNotFound(GenerationError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobFetchError(GenerationError):
    """Reading a job failed for a reason other than it not existing."""

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id


class AlreadyPolling(GenerationError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is already being polled")
        self.job_id = job_id


class SessionAlreadyActive(GenerationError):
    def __init__(self, target_entity_id: str):
        super().__init__(f"A generation is already running for {target_entity_id}")
        self.target_entity_id = target_entity_id


class InvalidTransition(GenerationError):
    retryable = False


class GenerationCancelled(GenerationError):
    """The session was cancelled before a job was submitted."""

    retryable = False

    def __init__(self, phase: str):
        super().__init__(f"Cancelled before {phase}")
        self.phase = phase
