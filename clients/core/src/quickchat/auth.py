"""Phone sign-in on top of the backend's identifier/secret accounts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .config import DEFAULT_ACCOUNT_SECRET
from .errors import AuthError, ValidationError
from .models import User
from .session import SessionContext

logger = logging.getLogger(__name__)

_DIAL_CODE_RE = re.compile(r"^\+\d{1,4}$")
_OTP_RE = re.compile(r"^\d{4}$")


@dataclass(frozen=True)
class SignInResult:
    user: User
    created: bool

    @property
    def needs_profile(self) -> bool:
        return not self.user.is_registered


def build_identifier(dial_code: str, number: str) -> str:
    """Join a dial code and a local number into the account identifier."""

    dial_code = dial_code.strip()
    if not _DIAL_CODE_RE.match(dial_code):
        raise ValidationError("dial code must look like +44")
    digits = re.sub(r"[\s\-().]", "", number)
    if not digits.isdigit():
        raise ValidationError("please enter a phone number")
    return f"{dial_code}{digits}"


def validate_otp(code: str) -> str:
    code = code.strip()
    if not _OTP_RE.match(code):
        raise ValidationError("invalid OTP")
    return code


async def sign_in(context: SessionContext, identifier: str, secret: str) -> SignInResult:
    """Log in, or sign up when the identifier is unknown, then persist the credential."""

    if not identifier or not secret:
        raise ValidationError("identifier and secret required")
    created = False
    try:
        user = await context.backend.login(identifier, secret)
    except AuthError:
        try:
            user = await context.backend.signup(
                identifier, secret, {"phone": identifier, "is_registered": False}
            )
        except ValidationError as exc:
            # Identifier exists, so the login failure was a wrong secret.
            raise AuthError("invalid identifier/secret") from exc
        created = True
        logger.info("signed up %s", identifier)
    else:
        logger.info("logged in %s", identifier)
    context.sessions.save_session(identifier, secret)
    context.user = user
    return SignInResult(user=user, created=created)


async def sign_in_with_otp(
    context: SessionContext,
    identifier: str,
    otp: str,
    *,
    account_secret: str = DEFAULT_ACCOUNT_SECRET,
) -> SignInResult:
    """Check the one-time code, then sign in with the stable account secret.

    The code only gates this attempt; it is never stored or sent as the
    account secret, so a later login with a fresh code reaches the same
    account.
    """

    validate_otp(otp)
    return await sign_in(context, identifier, account_secret)


async def sign_out(context: SessionContext) -> None:
    try:
        await context.backend.logout()
    finally:
        context.sessions.clear_session()
        context.user = None
