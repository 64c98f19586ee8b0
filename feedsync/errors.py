from __future__ import annotations


class FeedSyncError(Exception):
    """Base class for errors raised by the sync engine."""


class NetworkError(FeedSyncError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(FeedSyncError):
    pass


class CalendarNotFoundError(FeedSyncError):
    pass


class CalendarBusyError(FeedSyncError):
    pass


class DocumentNotFoundError(FeedSyncError):
    pass
