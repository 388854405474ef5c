"""
Error taxonomy for the newsletter service.

Delivery errors are raised by the email client and interpreted by the
delivery worker; the rest signal storage-level problems to callers.
"""


class NewsletterError(Exception):
    """Base class for all service errors."""


class DeliveryError(NewsletterError):
    """An email could not be delivered."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network error, timeout or server-side failure. Retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Rejected by the email API (4xx). Never retried."""


class DeliveryConflictError(NewsletterError):
    """A delivery task for the same (issue, recipient) pair is already queued."""

    def __init__(self, issue_id: str, subscriber_email: str):
        super().__init__(
            f"Delivery task already queued for issue {issue_id} and {subscriber_email}"
        )
        self.issue_id = issue_id
        self.subscriber_email = subscriber_email


class IssueNotFoundError(NewsletterError):
    """A queued task references a newsletter issue that does not exist."""


class IdempotencyRecordMissingError(NewsletterError):
    """save_response was called for a key that was never pre-inserted."""


class StorageUnavailableError(NewsletterError):
    """The database kept failing; the worker gives up and exits."""
