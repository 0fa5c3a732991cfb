"""Exception types raised by xstash.

Everything derives from RuntimeError so the CLI can report any of them the
same way: print the message and exit non-zero.
"""


class XstashError(RuntimeError):
    """Base class for xstash errors."""


class ConfigError(XstashError):
    """Invalid configuration file or command-line value."""


class SchemaVersionError(XstashError):
    """The database was written by a newer xstash than this one."""


class SyncCancelled(XstashError):
    """The user declined to continue after the cost estimate."""


class ApiError(XstashError):
    """Non-success response from the X API."""

    def __init__(
        self,
        status_code: int,
        endpoint: str,
        body: str = "",
        message: str | None = None,
    ):
        self.status_code = status_code
        self.endpoint = endpoint
        self.body = body
        if message is None:
            message = f"X API request failed ({status_code}) {endpoint}"
            if body:
                message += f": {body}"
        super().__init__(message)


class AuthError(ApiError):
    """Access token missing, expired or lacking the required scopes."""

    def __init__(self, status_code: int, endpoint: str, body: str = ""):
        super().__init__(
            status_code,
            endpoint,
            body,
            message=(
                f"Authentication failed ({status_code}) for {endpoint}. "
                "Your access token may be expired. Run `xstash setup` again "
                "or set XSTASH_ACCESS_TOKEN."
            ),
        )


class RateLimitError(ApiError):
    """Still rate limited after exhausting retries."""

    def __init__(self, endpoint: str, retry_after: float | None = None):
        wait_msg = f" Retry in {int(retry_after)}s." if retry_after else ""
        super().__init__(
            429, endpoint, message=f"Rate limited by X API on {endpoint}.{wait_msg}"
        )
        self.retry_after = retry_after


class MediaDownloadError(XstashError):
    """A media file could not be downloaded."""

    SKIPPABLE_STATUSES = frozenset({401, 403, 404, 410})

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Media download failed {status_code}: {url}")

    @property
    def skippable(self) -> bool:
        """True when the media is gone or forbidden and retrying won't help."""
        return self.status_code in self.SKIPPABLE_STATUSES
