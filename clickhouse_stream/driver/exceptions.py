from typing import Optional


class Error(Exception):
    pass


class DatabaseError(Error):
    pass


class ProgrammingError(DatabaseError):
    pass


class InvalidArgument(ProgrammingError):
    """
    Missing query text, table name or insert records.  Always raised before anything is sent to the server
    """


class StreamClosedError(ProgrammingError):
    pass


class NotSupportedError(DatabaseError):
    pass


class UnsupportedFormat(NotSupportedError):
    pass


class ServerError(DatabaseError):
    """
    The ClickHouse server rejected the request.  The message is the trimmed text of the error response body
    """

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class StreamFailureError(ServerError):
    """
    The server reported an exception after the successful response status had already been sent
    """


class OperationalError(DatabaseError):
    pass


class TransportError(OperationalError):
    """
    Connection, timeout or name resolution failure with no server response.  The original exception is kept
    in `original` and as the exception cause
    """

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class DataError(DatabaseError):
    pass


class DecodeError(DataError):
    """
    Malformed or truncated row stream.  `tail` holds the undecoded text at the failure point, which is used
    to find an exception message written into the stream by the server
    """

    def __init__(self, message: str, tail: str = ''):
        super().__init__(message)
        self.tail = tail
