"""Error kinds raised by the message relay core.

Every error carries a ``code`` which the HTTP layer uses as the response
status. ``wrap_error`` adds context to an error while keeping its kind.
"""
from typing import Iterable


class MessageServiceError(Exception):
    """Base error for the relay core."""

    code = 500

    def __init__(self, message: str, code: int = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class NotFound(MessageServiceError):
    code = 404


class InvalidStateTransition(MessageServiceError):
    code = 409

    def __init__(self, actual: str, expected: Iterable[str], message: str = None):
        self.actual = actual
        self.expected = tuple(expected)
        if message is None:
            message = f"message has wrong status [{actual}]. expected [{','.join(self.expected)}]"
        super().__init__(message)


class PersistenceFailure(MessageServiceError):
    code = 500


class EncodingFailure(MessageServiceError):
    code = 500


class DispatchFailure(MessageServiceError):
    code = 502


class InvalidEventName(MessageServiceError):
    code = 400


def wrap_error(err: Exception, message: str) -> MessageServiceError:
    """
    Return a new error of the same kind as ``err`` with ``message`` prepended.

    Errors that are not ``MessageServiceError`` become a plain
    ``MessageServiceError`` with code 500. Callers raise the result
    ``from err`` so the original traceback stays attached.
    """
    if not isinstance(err, MessageServiceError):
        return MessageServiceError(f"{message}: {err}")

    wrapped = MessageServiceError.__new__(type(err))
    MessageServiceError.__init__(wrapped, f"{message}: {err.message}", err.code)
    if isinstance(err, InvalidStateTransition):
        wrapped.actual = err.actual
        wrapped.expected = err.expected
    return wrapped
