"""FastAPI dependencies for database, authentication, payments and notifications."""

from typing import AsyncGenerator, Optional

import jwt
from fastapi import Depends, Header, Request
from jwt import PyJWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations.payment_gateway import PaymentGateway, PaymentGatewayClient
from ..services.notification_service import ConfirmationNotifier
from .config import settings
from .database import get_async_session
from .exceptions import AuthenticationError, AuthorizationError

ADMIN_ROLE = "admin"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> dict:
    """
    Authentication dependency that validates HS256 Bearer tokens.

    Returns:
        dict: User information from the validated token

    Raises:
        AuthenticationError: If the token is missing, malformed, expired or has no subject
    """
    if not authorization:
        raise AuthenticationError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header format")
    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")

    try:
        # PyJWT rejects expired tokens when an exp claim is present
        payload = jwt.decode(token, settings.bearer_token_secret, algorithms=["HS256"])
    except PyJWTError as e:
        raise AuthenticationError(f"Token validation failed: {e}")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError("Invalid token payload")

    return {
        "user_id": str(user_id),
        "username": payload.get("username"),
        "email": payload.get("email"),
        "roles": payload.get("roles", []),
    }


async def get_buyer_id(user: dict = Depends(get_current_user)) -> str:
    """The buyer acting on their own carts, checkouts, bookings and waitlist entries."""
    return user["user_id"]


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Restrict trip series administration to tokens carrying the admin role."""
    if ADMIN_ROLE not in user["roles"]:
        raise AuthorizationError(required_permissions=[ADMIN_ROLE])
    return user


def get_payment_gateway(request: Request) -> PaymentGateway:
    """
    The process-wide gateway client, created on first use.

    Tests replace this dependency with a fake gateway.
    """
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        gateway = PaymentGatewayClient.from_settings(settings)
        request.app.state.payment_gateway = gateway
    return gateway


def get_notifier() -> ConfirmationNotifier:
    return ConfirmationNotifier()


RequiredAuth = Depends(get_current_user)
DatabaseSession = Depends(get_db)
BuyerId = Depends(get_buyer_id)
AdminUser = Depends(require_admin)
Gateway = Depends(get_payment_gateway)
Notifier = Depends(get_notifier)
