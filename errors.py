"""
Error taxonomy for the Dwelligence search core.

ValidationError     -> 400, caller sent missing/malformed fields
UpstreamUnavailable -> maps / commute / text-completion failure or timeout;
                       the owning stage substitutes a safe default
ParseError          -> text-completion output did not match the expected shape
NotFoundError       -> unknown listing id (routes answer 404)
ConfigError         -> required environment configuration missing at startup
"""


class DwelligenceError(Exception):
    """Base class for all errors raised by this package."""

    status_code = 500


class ValidationError(DwelligenceError):
    """Raised when a request is missing required fields or they are malformed."""

    status_code = 400


class NotFoundError(DwelligenceError):
    """Raised by routes when a single-listing lookup misses."""

    status_code = 404


class UpstreamUnavailable(DwelligenceError):
    """Raised when an external capability fails or times out.

    ``service`` names the capability ("google_maps", "gemini") so logs and
    Sentry breadcrumbs can be attributed without parsing the message.
    """

    status_code = 502

    def __init__(self, message: str, service: str = "unknown"):
        super().__init__(message)
        self.service = service


class ParseError(DwelligenceError):
    """Raised when a text-completion response is not the structured shape we asked for."""

    status_code = 500


class ConfigError(DwelligenceError):
    """Raised at startup when required configuration is absent."""

    def __init__(self, missing_keys):
        self.missing_keys = list(missing_keys)
        super().__init__(
            "Missing required configuration: " + ", ".join(self.missing_keys)
        )
