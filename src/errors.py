"""Exceptions raised by the supervisor and mapped to HTTP status codes by the API."""


class SupervisorError(Exception):
    """Base class for errors surfaced to the admin layer."""


class StreamNotFoundError(SupervisorError):
    def __init__(self, stream_id: str):
        super().__init__(f"Stream {stream_id} not found")
        self.stream_id = stream_id


class InvalidStreamError(SupervisorError):
    """Input rejected before any state changed."""


class TooManyRedirectsError(SupervisorError):
    def __init__(self, url: str, max_redirects: int):
        super().__init__(
            f"Too many redirects fetching {url} (limit {max_redirects})")
        self.url = url
        self.max_redirects = max_redirects


class ProbeError(SupervisorError):
    """The media inspector failed, timed out or returned unusable output."""

    def __init__(self, message: str, returncode=None, stderr: str = "",
                 timed_out: bool = False):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
