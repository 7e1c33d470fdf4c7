from __future__ import annotations


class YoloxKitError(Exception):
    """
    Base class for every error raised by yolox_kit.
    """


class ShapeMismatch(YoloxKitError, ValueError):
    """
    Raw buffer length does not match `proposal_length * cell_count`.
    """


class ConfigurationInvalid(YoloxKitError, ValueError):
    """
    Empty/malformed label table, zero class count or out-of-range thresholds.
    """


class ReadbackFailed(YoloxKitError, RuntimeError):
    """
    The external pixel transfer reported an error for a request.

    Never raised out of a completion handler; handed to `on_error` callbacks
    and kept as `ReadbackChannel.last_error` instead.
    """

    def __init__(self, message: str, request_id: int | None = None):
        super().__init__(message)
        self.request_id = request_id


class UnsupportedTransferPath(YoloxKitError, RuntimeError):
    """
    Asynchronous readback requested but not available in this environment.
    """
