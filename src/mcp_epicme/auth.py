"""Unclaimed-grant authentication.

Grants are issued by the OAuth layer before the human behind them is known.
A grant starts UNCLAIMED; the human claims it by entering a one-time code
that was emailed to them, which binds the grant to a user. Logging out
returns the grant to UNCLAIMED.

    UNCLAIMED --validate_token--> CLAIMED --unclaim--> UNCLAIMED
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import EmailStr, TypeAdapter, ValidationError

from .config import ServerConfig
from .errors import (
    EmailDispatchFailure,
    GrantNotClaimed,
    GrantNotFound,
    InvalidEmail,
    Unauthenticated,
)
from .mailer import EmailMessage, EmailSender
from .models import Grant, User, ValidationToken, utc_now
from .store import JournalStore
from .totp import generate_totp

logger = logging.getLogger(__name__)

CodeGenerator = Callable[[str, str, datetime], str]

_email_address = TypeAdapter(EmailStr)


def check_email(email: str) -> str:
    """Return ``email`` without surrounding whitespace, or raise InvalidEmail."""
    email = email.strip()
    try:
        _email_address.validate_python(email)
    except ValidationError as e:
        raise InvalidEmail(email) from e
    return email


class AuthBridge:
    """Issues, claims, and releases grants."""

    def __init__(
        self,
        store: JournalStore,
        email_sender: EmailSender,
        config: Optional[ServerConfig] = None,
        code_generator: Optional[CodeGenerator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.email_sender = email_sender
        self.config = config or ServerConfig()
        self._code_generator = code_generator or self._default_code
        self._clock = clock

    def _default_code(self, grant_id: str, email: str, now: datetime) -> str:
        return generate_totp(
            grant_id,
            email,
            now=now,
            period=self.config.totp_period,
            digits=self.config.totp_digits,
            algorithm=self.config.totp_algorithm,
        )

    def create_unclaimed_grant(self, candidate_user_id: str) -> str:
        """Persist a grant with no owner and return its id."""
        grant_id = self.store.create_unclaimed_grant(candidate_user_id)
        logger.info("Created unclaimed grant %s", grant_id)
        return grant_id

    def require_grant(self, grant_id: Optional[str]) -> Grant:
        if not grant_id:
            raise Unauthenticated()
        grant = self.store.get_grant(grant_id)
        if grant is None:
            raise GrantNotFound(grant_id)
        return grant

    async def authenticate(self, grant_id: Optional[str], email: str) -> ValidationToken:
        """Issue a code for ``email`` and send it. Does not claim the grant.

        Any token previously issued for the grant stops being valid.

        Raises:
            Unauthenticated: No grant id
            GrantNotFound: Grant id does not resolve
            InvalidEmail: ``email`` is not an email address
            EmailDispatchFailure: The email could not be sent
        """
        grant = self.require_grant(grant_id)
        email = check_email(email)
        now = self._clock()
        self.store.purge_expired_tokens(now)
        code = self._code_generator(grant.id, email, now)
        token = self.store.create_validation_token(
            email=email,
            grant_id=grant.id,
            code=code,
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.get_token_ttl()),
        )

        body = f"Here's your {self.config.project_name} validation token: {code}"
        try:
            await self.email_sender.send(EmailMessage(
                to=email,
                subject=f"{self.config.project_name} Validation Token",
                html=f"<p>{body}</p>",
                text=body,
            ))
        except EmailDispatchFailure:
            raise
        except Exception as e:
            raise EmailDispatchFailure(f"Could not send validation email: {e}") from e

        logger.info("Issued validation token for grant %s", grant.id)
        return token

    def validate_token(self, grant_id: Optional[str], code: str) -> User:
        """Claim the grant with an emailed code.

        Raises:
            Unauthenticated: No grant id
            GrantNotFound: Grant id does not resolve
            TokenNotFound: No live token for the grant
            InvalidToken: Code does not match
        """
        grant = self.require_grant(grant_id)
        email = self.store.consume_validation_token(grant.id, code, self._clock())
        user = self.store.get_or_create_user(email)
        self.store.set_grant_owner(grant.id, user.id)
        logger.info("Grant %s claimed by user %s", grant.id, user.id)
        return user

    def require_user(self, grant_id: Optional[str]) -> User:
        """Resolve the user that owns the grant.

        Every authenticated operation calls this first.

        Raises:
            Unauthenticated: No grant id
            GrantNotFound: Grant id does not resolve
            GrantNotClaimed: Grant has no owner
        """
        grant = self.require_grant(grant_id)
        if grant.owner_user_id is None:
            raise GrantNotClaimed(grant.id)
        user = self.store.get_user_by_id(grant.owner_user_id)
        if user is None:
            raise GrantNotClaimed(grant.id)
        return user

    def current_user(self, grant_id: Optional[str]) -> Optional[User]:
        """Like require_user, but returns None instead of raising."""
        if not grant_id:
            return None
        return self.store.get_user_by_grant_id(grant_id)

    def unclaim(self, grant_id: Optional[str]) -> bool:
        """Return the grant to UNCLAIMED. Idempotent.

        Returns:
            True if the grant was claimed before the call
        """
        grant = self.require_grant(grant_id)
        changed = self.store.unclaim_grant(grant.id)
        if changed:
            logger.info("Grant %s unclaimed", grant.id)
        return changed
