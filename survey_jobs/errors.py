"""Exception types for the survey jobs library."""

from typing import Optional

# Provider error codes that describe a blip rather than a bad request.
TRANSIENT_PROVIDER_CODES = frozenset({"rate_limited", "connection_lost", "unknown_error"})


class SurveyJobsError(Exception):
    """Base exception for all survey jobs errors."""

    pass


class JobNotFoundError(SurveyJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class DeliveryNotFoundError(SurveyJobsError):
    """Raised when a survey delivery is not found."""

    def __init__(self, delivery_id, message: str = None):
        self.delivery_id = delivery_id
        if message is None:
            message = f"Delivery {delivery_id} not found"
        super().__init__(message)


class WebhookSignatureError(SurveyJobsError):
    """Raised when a webhook signature is missing or does not match."""

    pass


class WebhookPayloadError(SurveyJobsError):
    """Raised when a webhook body cannot be parsed into messages."""

    pass


class SurveySendError(SurveyJobsError):
    """Raised when a survey send request is rejected before queueing."""

    def __init__(self, message: str, code: str):
        self.code = code
        super().__init__(message)


class ProviderError(SurveyJobsError):
    """Raised by the messaging provider client.

    ``retryable`` defaults from the error code when not given explicitly.
    """

    def __init__(self, code: str, message: str, retryable: Optional[bool] = None):
        self.code = code
        if retryable is None:
            retryable = code in TRANSIENT_PROVIDER_CODES
        self.retryable = retryable
        super().__init__(message)


class RemoteHttpError(SurveyJobsError):
    """Raised when an HTTP request to the messaging provider fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")
