from typing import Optional


class CollectorError(Exception):
    """Base class for errors raised by the collector core."""


class ReportParseError(CollectorError, ValueError):
    """A request body could not be decoded into NEL reports.

    ``index`` names the offending element of a top-level array, or is
    ``None`` when the document as a whole is malformed.
    """

    def __init__(self, message: str, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.index = index


class StoreError(CollectorError):
    """Base class for destination store failures."""


class StoreConnectError(StoreError):
    pass


class StoreWriteError(StoreError):
    """A batch could not be committed; nothing from the batch was stored."""

    def __init__(self, message: str, phase: str, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.phase = phase
        self.index = index


class SerializationError(StoreWriteError):
    """A JSON column of one record could not be encoded."""

    def __init__(self, message: str, index: int, column: str) -> None:
        super().__init__(message, phase="serialize", index=index)
        self.column = column
