"""Exception hierarchy for the editing core."""


class EditorError(Exception):
    """Base exception for editor operations."""
    pass


class EmptyHistoryError(EditorError):
    """Raised when undo is requested with nothing to undo."""
    pass


class EmptyRedoError(EditorError):
    """Raised when redo is requested with nothing to redo."""
    pass


class EncodingError(EditorError):
    """Raised when a source image cannot be decoded or a raster cannot be encoded."""
    pass


class SessionBusyError(EditorError):
    """Raised when an async tool is started while another one is in flight."""
    pass


class InvalidEditError(EditorError, ValueError):
    """Raised when an edit value is outside its allowed domain."""
    pass


class AIServiceError(EditorError):
    """Base exception for generative image service failures."""

    def __init__(self, message: str, error_code: str = "UNKNOWN"):
        super().__init__(message)
        self.error_code = error_code


class RateLimitError(AIServiceError):
    """Raised when the service reports a rate limit or exhausted quota."""
    pass


class NetworkError(AIServiceError):
    """Raised when the service cannot be reached."""
    pass


class UnknownServiceError(AIServiceError):
    """Raised for any other service failure, including empty responses."""
    pass
