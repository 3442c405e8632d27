"""Error taxonomy shared by every component.

Transport and provider errors are converted into these types at each
component boundary, so callers never see raw ``httpx`` exceptions.
"""


class HighlightsError(Exception):
    """Base class for all application errors."""


class AuthRequired(HighlightsError):
    """No usable credential and no way to refresh one. The user must log in again."""


class RefreshFailed(AuthRequired):
    """The provider rejected the refresh token. Credentials have been cleared."""


class UpstreamFailure(HighlightsError):
    """A provider or collaborator returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ImageFetchFailed(UpstreamFailure):
    pass


class PickerSessionExpired(UpstreamFailure):
    pass


class ExtractionFailed(HighlightsError):
    """The AI collaborator failed, timed out or returned a malformed result."""


class RecordNotFound(HighlightsError):
    pass
