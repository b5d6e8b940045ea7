"""
Identity coordination: log a shopper in mid-checkout without losing the cart
or the address they already entered.
"""
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from checkout_core.config import Config
from checkout_core.exceptions import (
    CheckoutException,
    ErrorKind,
    OperationInProgressError,
    ValidationError
)
from checkout_core.middleware import hash_identifier
from checkout_core.models import CustomerInfo, SessionCredentials, SessionUser
from checkout_core.operations import Operation
from checkout_core.providers import AuthClient
from checkout_core.session_store import SessionStore

logger = logging.getLogger(__name__)

LoginContinuation = Callable[[SessionUser], Union[Awaitable[None], None]]


class LoginOutcome(BaseModel):
    ok: bool
    user: Optional[SessionUser] = None
    message: str = ""
    error: Optional[ErrorKind] = None


class IdentityCoordinator:
    """Authenticates a shopper and commits the session credentials"""

    def __init__(self, auth_client: AuthClient, store: SessionStore):
        self.auth_client = auth_client
        self.store = store
        self.login_operation = Operation("login")

    @property
    def loading(self) -> bool:
        return self.login_operation.in_flight

    async def login(
        self,
        session_id: str,
        email: str,
        password: str,
        on_success: Optional[LoginContinuation] = None
    ) -> LoginOutcome:
        """
        Authenticate and commit the session in one atomic store write.

        Empty credentials fail validation before any network call. On any
        failure the persisted session is left untouched. On success the
        continuation receives the new user so the caller can carry its
        in-flight checkout state over to the new identity.
        """
        try:
            async with self.login_operation.run():
                if not email or not password:
                    raise ValidationError("Please enter both email and password")

                result = await self.auth_client.login(email, password)
                credentials = SessionCredentials(
                    access_token=result.tokens.access_token,
                    refresh_token=result.tokens.refresh_token,
                    user=result.user
                )
                await self.store.commit_session(session_id, credentials, ttl=Config.SESSION_TTL_SECONDS)
        except OperationInProgressError:
            return LoginOutcome(ok=False, message="Login already in progress", error=ErrorKind.BUSY)
        except CheckoutException as e:
            logger.warning(f"Login failed for {hash_identifier(email or '-')}: {type(e).__name__}: {e.message}")
            return LoginOutcome(ok=False, message=e.message, error=e.kind)

        logger.info(f"Session {hash_identifier(session_id)} logged in as user {hash_identifier(credentials.user.id)}")

        if on_success is not None:
            continuation = on_success(credentials.user)
            if inspect.isawaitable(continuation):
                await continuation

        return LoginOutcome(ok=True, user=credentials.user, message="Logged in successfully!")

    async def current_user(self, session_id: str) -> Optional[SessionUser]:
        """User of an already authenticated session"""
        credentials = await self.store.load_session(session_id)
        return credentials.user if credentials else None

    async def access_token(self, session_id: str) -> Optional[str]:
        credentials = await self.store.load_session(session_id)
        return credentials.access_token if credentials else None

    async def logout(self, session_id: str) -> bool:
        return await self.store.clear_session(session_id)

    @staticmethod
    def fill_user_info(user: SessionUser, customer_info: CustomerInfo) -> None:
        """Copy contact details from the account into the checkout form"""
        if user.name:
            customer_info.name = user.name
            customer_info.email = user.email or ""
            customer_info.phone = user.phone or ""
