from __future__ import annotations

from typing import Any, Optional


class SponsorError(Exception):
    """Base class for sponsortx errors.

    ``transient`` tells the orchestrator whether the failure is scoped to one
    gas station attempt (eligible for failover) or would repeat anywhere.
    """

    transient = True

    def __init__(self, message: str, transient: Optional[bool] = None, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        if transient is not None:
            self.transient = transient
        self.details = details


class GasStationError(SponsorError):
    def __init__(
        self,
        message: str,
        station_url: str = "",
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        transient: Optional[bool] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message, transient=transient, details=details)
        self.station_url = station_url
        self.status_code = status_code
        self.reason = reason


class GasStationUnreachable(GasStationError):
    pass


class GasStationRejected(GasStationError):
    pass


class SponsorSubmissionFailed(GasStationError):
    pass


class AssemblyError(SponsorError):
    pass


class FaucetTimeout(SponsorError):
    transient = False

    def __init__(self, address: str, timeout_seconds: float, last_balance: Optional[int] = None):
        super().__init__(f"faucet did not fund {address} within {timeout_seconds:g}s")
        self.address = address
        self.timeout_seconds = timeout_seconds
        self.last_balance = last_balance


class LedgerError(SponsorError):
    transient = False

    def __init__(self, message: str, code: Optional[int] = None, details: Optional[Any] = None):
        super().__init__(message, details=details)
        self.code = code


class LedgerSubmissionError(LedgerError):
    pass


class LinkageError(SponsorError):
    transient = False


class LinkageFetchError(LinkageError):
    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class LinkageValidationError(LinkageError):
    pass


def is_failover_eligible(exc: BaseException) -> bool:
    if isinstance(exc, SponsorError):
        return exc.transient
    return isinstance(exc, Exception)
