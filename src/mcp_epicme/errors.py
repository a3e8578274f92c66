"""Exception hierarchy for EpicMe operations."""

from __future__ import annotations


class EpicMeError(Exception):
    """Base exception for EpicMe operations."""
    pass


class AuthError(EpicMeError):
    """Base class for authentication and grant failures."""
    pass


class Unauthenticated(AuthError):
    """Raised when no grant is bound to the request."""

    def __init__(self, message: str = "You must be logged in to perform this action"):
        super().__init__(message)


class GrantNotFound(AuthError):
    """Raised when a grant id does not resolve to a stored grant."""

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(
            "The given grant is invalid (no matching grant in the database)"
        )


class GrantNotClaimed(AuthError):
    """Raised when a grant exists but no user has claimed it yet."""

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(
            "No user found with the given grantId. "
            'Please claim the grant by invoking the "authenticate" tool.'
        )


class TokenNotFound(AuthError):
    """Raised when no live validation token exists for a grant."""

    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(
            "No validation token found for this grant (it may have expired). "
            'Invoke the "authenticate" tool to receive a new one.'
        )


class InvalidToken(AuthError):
    """Raised when a submitted code does not match the stored token."""

    def __init__(self) -> None:
        super().__init__(
            "The validation token is invalid. Check the code in your email "
            'or invoke the "authenticate" tool again.'
        )


class EmailDispatchFailure(EpicMeError):
    """Raised when the validation email could not be sent."""
    pass


class SuggestionParseFailure(EpicMeError):
    """Raised when a sampled tag-suggestion response cannot be used."""
    pass


class NotFoundError(EpicMeError):
    """Raised when an entry or tag does not exist for the user."""
    pass


class DuplicateTagError(EpicMeError):
    """Raised when creating a tag whose name already exists for the user."""
    pass


class InvalidEmail(AuthError):
    """Raised when authenticate is given something that is not an email address."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f'"{email}" is not a valid email address')
