"""Exception taxonomy for journey execution.

Each class maps to an ``ErrorKind`` so a failure can be recorded as a
structured error on the JourneyResult.
"""

from src.core.schemas import ErrorKind


class JourneyError(Exception):
    """Base class for every failure the worker knows how to classify."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class JobTimeoutError(JourneyError):
    """Per-job deadline exceeded. Recorded, never retried within the job."""

    kind = ErrorKind.TIMEOUT


class CaptchaError(JourneyError):
    """A challenge page could not be cleared with the current identity."""

    kind = ErrorKind.CAPTCHA


class CaptchaUnsolvedError(CaptchaError):
    """All resolution cycles were spent and the challenge is still up."""


class IpBlockedError(CaptchaError):
    """Challenge page without a solvable widget: the egress IP is burned."""

    kind = ErrorKind.IP_BLOCKED


class SolverError(JourneyError):
    """The solving service rejected the task or did not answer in time."""

    kind = ErrorKind.CAPTCHA


class TransientNavigationError(JourneyError):
    """A selector or navigation step failed. Scans fall through on this."""

    kind = ErrorKind.NAVIGATION


class ProvisioningError(JourneyError):
    """A browsing identity could not be created, started or connected."""

    kind = ErrorKind.PROVISIONING


class InvalidParamsError(JourneyError):
    """The job parameters cannot drive the requested journey."""

    kind = ErrorKind.INVALID_PARAMS


class PersistenceError(JourneyError):
    """Writing a job result failed. Logged, never raised into execution."""

    kind = ErrorKind.PERSISTENCE
