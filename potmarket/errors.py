"""Domain errors raised by the services and mapped to HTTP responses in main."""

from fastapi import status


class PotMarketError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class EventNotFound(PotMarketError):
    status_code = status.HTTP_404_NOT_FOUND


class UserNotFound(PotMarketError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidResolutionInput(PotMarketError):
    """The supplied correct answer cannot settle the event."""


class DataIntegrityError(PotMarketError):
    """A participant row is malformed; the whole event is left untouched."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConcurrentResolutionConflict(PotMarketError):
    """Another actor claimed the event first. Re-fetch the event and move on."""

    status_code = status.HTTP_409_CONFLICT


class AlreadyResolved(PotMarketError):
    """Settlement was requested for a RESOLVED event. Nothing was written."""

    status_code = status.HTTP_200_OK


class InvalidTransition(PotMarketError):
    status_code = status.HTTP_409_CONFLICT


class EventClosed(PotMarketError):
    status_code = status.HTTP_410_GONE


class DuplicateStake(PotMarketError):
    status_code = status.HTTP_409_CONFLICT


class DuplicateEvent(PotMarketError):
    status_code = status.HTTP_409_CONFLICT


class InvalidStake(PotMarketError):
    pass


class InsufficientPoints(PotMarketError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class InsufficientFees(PotMarketError):
    pass


class InvalidEvent(PotMarketError):
    pass


class InvalidUserUpdate(PotMarketError):
    pass
