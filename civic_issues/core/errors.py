"""
Error taxonomy for the issue intelligence pipeline.

Oracle errors are always recovered inside the component that made the call.
InvalidCoordinates is the only condition that aborts issue creation.
"""


class OracleError(Exception):
    """Base class for any failure of the external scoring oracle."""


class OracleUnavailable(OracleError):
    """No credentials or model configured for the oracle."""


class OracleTimeout(OracleError):
    """The oracle did not answer within the per-call timeout."""


class OracleResponseError(OracleError):
    """The oracle answered but the payload could not be parsed."""


class InvalidCoordinates(ValueError):
    """Longitude/latitude outside the valid range or not finite."""

    def __init__(self, longitude, latitude):
        self.longitude = longitude
        self.latitude = latitude
        super().__init__(f"Invalid coordinates: longitude={longitude}, latitude={latitude}")


class IssueNotFound(LookupError):
    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} not found")


class SelfVoteError(ValueError):
    """The reporter of an issue tried to vote on it."""


class InvalidUpdate(ValueError):
    """An administrative update carried an out-of-range field."""


class AccessDenied(PermissionError):
    """A non-admin asked for a private issue they did not report."""
