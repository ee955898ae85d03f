"""Classification of upstream LLM failures."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """
    Failure taxonomy shared by the provider, the runner and the orchestrator.

    Transient kinds are retried with backoff; terminal kinds end the attempt.
    """

    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    NETWORK = "network"
    MALFORMED = "malformed"
    PAYMENT = "payment"
    AUTH = "auth"
    CLIENT = "client"
    TIMEOUT = "timeout"

    @property
    def is_transient(self) -> bool:
        return self in _TRANSIENT


_TRANSIENT = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.SERVER, ErrorKind.NETWORK, ErrorKind.MALFORMED})


def classify_status(status: int | None) -> ErrorKind:
    """
    Map an HTTP status (or its absence) to an ErrorKind.

    A missing status means the request never got a response (connection
    reset, DNS failure), which is treated as a network error.
    """
    if status is None or status == 408:
        return ErrorKind.NETWORK
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status == 402:
        return ErrorKind.PAYMENT
    if status in (401, 403):
        return ErrorKind.AUTH
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.CLIENT


def classify_exception(exc: BaseException) -> ErrorKind:
    """Classify an exception raised while calling the LLM."""
    if isinstance(exc, (ValueError, KeyError, IndexError, AttributeError)) and not hasattr(exc, "status_code"):
        return ErrorKind.MALFORMED
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = None
    return classify_status(status)
