"""
Error taxonomy shared by the datastore adapter, the retry executor and the
HTTP layer.
"""


class AnalyticsError(Exception):
    status_code = 500


class ValidationError(AnalyticsError):
    """
    Bad or incomplete request input. Never retried, surfaced as 400.
    """
    status_code = 400


class DatastoreError(AnalyticsError):
    """
    Base for failures raised by the datastore adapter.
    """


class TransientConnectivityError(DatastoreError):
    """
    Connection refused, timeout, unreachable host, exhausted pool.
    The only kind of failure the executor retries.
    """
    status_code = 503


class DatastoreIntegrityError(DatastoreError):
    """
    Constraint violation or similar logic error reported by the datastore.
    """


# Fallback only: used for exceptions raised outside the adapter boundary.
TRANSIENT_MESSAGE_MARKERS = (
    "econnrefused",
    "etimedout",
    "connection",
    "timeout",
    "timed out",
    "can't reach database",
    "unreachable",
)


def is_retryable(exc: BaseException) -> bool:
    """
    Classify an error raised by a wrapped operation.

    Typed errors are matched by class. Message inspection is only applied to
    exceptions that carry no classification at all.
    """
    if isinstance(exc, TransientConnectivityError):
        return True
    if isinstance(exc, AnalyticsError):
        return False
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)
