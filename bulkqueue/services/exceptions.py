from typing import Optional


class ServiceError(Exception):
    def __init__(self, code: str, message: Optional[str] = None) -> None:
        self.code = code
        self.message = message or code
        super().__init__(self.message)


class SubmissionError(ServiceError):
    pass


class JobNotFoundError(ServiceError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__("job_not_found", f"Job not found: {job_id}")


class JobStateError(ServiceError):
    pass
