"""
Error taxonomy for the tournament pipeline.
Ingestion errors are caught per report/run and turned into operator notices;
store errors abort the current commit.
"""

from typing import Optional


class TournamentError(Exception):
    """Base class for all tournament errors"""


# ==============================
# External API
# ==============================

class ApiError(TournamentError):
    """Any failure talking to the reporting API"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthError(ApiError):
    """Credentials missing or rejected - not retried until the next pass"""


class TransientError(ApiError):
    """Network/5xx failure that survived every retry"""


class RequestRejectedError(ApiError):
    """Client error (4xx) from the API - never retried"""


class MalformedResponseError(ApiError):
    """Response did not match the expected schema"""


# ==============================
# Domain / admin
# ==============================

class ValidationError(TournamentError):
    """Bad input: run timing, admin command fields, report reference"""


class ConflictError(TournamentError):
    """Display slot already held by another team"""


class NotFoundError(TournamentError):
    """Unknown team reference"""


# ==============================
# Persistence
# ==============================

class StoreError(TournamentError):
    """Durable write failed - the commit did not happen"""


class ReentrantWriteError(StoreError):
    """A store write was started from inside another write"""
