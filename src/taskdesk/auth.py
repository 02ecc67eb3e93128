"""
Taskdesk - Auth session bridge.

Maps the Appwrite account object onto the application's session/user
shape and broadcasts session transitions (SIGNED_IN, SIGNED_OUT) to
registered listeners synchronously, at the point of change.
"""

import logging
from typing import Any, Callable, Literal
from urllib.parse import quote

from pydantic import BaseModel

from taskdesk.company_policy import COMPANY_ACCESS_ERROR, is_company_email_allowed
from taskdesk.config import Settings
from taskdesk.db.errors import (
    AuthorizationError,
    BackendResult,
    TransportError,
    auth_config_error,
)
from taskdesk.db.gateway import DocumentGateway, encode_path
from taskdesk.db.policy import Actor
from taskdesk.db.request_context import (
    get_request_context,
    has_session_cookie,
    session_cookie_names,
    should_probe_account_on_auth_callback,
)

logger = logging.getLogger(__name__)

AuthEvent = Literal["SIGNED_IN", "SIGNED_OUT"]


class AuthUser(BaseModel):
    """Application user derived from an Appwrite account."""

    id: str
    email: str | None = None
    name: str | None = None
    email_verified: bool = False
    email_confirmed_at: str | None = None

    @classmethod
    def from_account(cls, account: dict[str, Any]) -> "AuthUser":
        verified = bool(account.get("emailVerification"))
        return cls(
            id=account.get("$id") or account.get("id") or "",
            email=account.get("email"),
            name=account.get("name"),
            email_verified=verified,
            email_confirmed_at=(account.get("$updatedAt") or account.get("$createdAt")) if verified else None,
        )


class AuthSession(BaseModel):
    user: AuthUser


class AuthResponse(BaseModel):
    """Result data of sign-in and sign-up."""

    user: AuthUser | None = None
    session: AuthSession | None = None


AuthChangeCallback = Callable[[AuthEvent, AuthSession | None], Any]


class AuthBridge:
    """Session operations against /account, exposed as `client.auth`."""

    def __init__(self, settings: Settings, gateway: DocumentGateway):
        self.settings = settings
        self._gateway = gateway
        self._listeners: list[AuthChangeCallback] = []

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on_auth_state_change(self, callback: AuthChangeCallback) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: AuthEvent, session: AuthSession | None) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, session)
            except Exception:
                logger.exception("Auth listener failed on %s", event)

    # -------------------------------------------------------------------------
    # Account probe
    # -------------------------------------------------------------------------

    async def get_current_account(self) -> BackendResult:
        """Current user as AuthUser; data None (no error) when anonymous."""
        result = await self._gateway.request("GET", "/account")
        if result.error is None and isinstance(result.data, dict):
            return BackendResult(data=AuthUser.from_account(result.data))
        if result.error is not None and result.error.status == 401:
            return BackendResult(data=None)
        return BackendResult(error=result.error or TransportError("Unable to load account."))

    async def current_actor(self) -> Actor | None:
        """Acting user for authorization; None when anonymous or unreachable."""
        account = await self.get_current_account()
        if account.data is None:
            return None
        return Actor(id=account.data.id, email=account.data.email)

    async def get_session(self) -> BackendResult:
        """
        Resolve the current session (data is AuthSession or None).

        Interactive requests without a session cookie and without OAuth or
        magic-link callback markers skip the probe entirely.
        """
        context = get_request_context()
        if context is not None:
            project_id = self.settings.appwrite_project_id.strip()
            if not has_session_cookie(context, project_id) and not should_probe_account_on_auth_callback(context):
                return BackendResult(data=None)

        account = await self.get_current_account()
        if account.error is not None:
            return BackendResult(error=account.error)
        if account.data is None:
            return BackendResult(data=None)
        return BackendResult(data=AuthSession(user=account.data))

    # -------------------------------------------------------------------------
    # Sign in / sign up / sign out
    # -------------------------------------------------------------------------

    async def sign_up(
        self,
        email: str,
        password: str,
        full_name: str | None = None,
        email_redirect_to: str | None = None,
    ) -> BackendResult:
        """Create an account, sign in, and request a verification email if a redirect is given."""
        if not self.settings.has_auth_config:
            return BackendResult(data=AuthResponse(), error=auth_config_error())
        if not is_company_email_allowed(email, self.settings):
            return BackendResult(data=AuthResponse(), error=AuthorizationError(COMPANY_ACCESS_ERROR))

        body: dict[str, Any] = {"userId": "unique()", "email": email, "password": password}
        if full_name:
            body["name"] = full_name
        created = await self._gateway.request("POST", "/account", json=body)
        if created.error is not None:
            return BackendResult(data=AuthResponse(), error=created.error)

        signed_in = await self.sign_in_with_password(email, password)
        if signed_in.error is None and email_redirect_to:
            verification = await self._gateway.request(
                "POST", "/account/verification", json={"url": email_redirect_to}
            )
            if verification.error is not None:
                logger.warning("Verification email request failed: %s", verification.error.message)

        user = None
        session = None
        if signed_in.error is None:
            user = signed_in.data.user
            session = signed_in.data.session
        elif isinstance(created.data, dict):
            user = AuthUser.from_account(created.data)
        return BackendResult(data=AuthResponse(user=user, session=session))

    async def sign_in_with_password(self, email: str, password: str) -> BackendResult:
        """Create an email session, load the account, then broadcast SIGNED_IN."""
        if not self.settings.has_auth_config:
            return BackendResult(data=AuthResponse(), error=auth_config_error())
        if not is_company_email_allowed(email, self.settings):
            return BackendResult(data=AuthResponse(), error=AuthorizationError(COMPANY_ACCESS_ERROR))

        created = await self._gateway.request(
            "POST", "/account/sessions/email", json={"email": email, "password": password}
        )
        if created.error is not None:
            return BackendResult(data=AuthResponse(), error=created.error)

        account = await self.get_current_account()
        if account.error is not None or account.data is None:
            return BackendResult(
                data=AuthResponse(),
                error=account.error or TransportError("Unable to load authenticated account.", status=401),
            )

        session = AuthSession(user=account.data)
        self._emit("SIGNED_IN", session)
        return BackendResult(data=AuthResponse(user=account.data, session=session))

    async def sign_in_with_oauth(
        self,
        provider: str,
        redirect_to: str | None = None,
        failure_redirect_to: str | None = None,
    ) -> BackendResult:
        """
        Start a redirect-based OAuth sign-in.

        Builds the provider URL and stores it on the request context as
        `redirect_to`; the web layer performs the redirect. The session
        appears on a later request, once the store has set its cookie.
        """
        if not self.settings.has_auth_config:
            return BackendResult(error=auth_config_error())

        context = get_request_context()
        if context is None:
            return BackendResult(error=TransportError("OAuth sign-in is only available for interactive requests."))

        success_url = redirect_to or f"{context.origin}/auth?oauth=success"
        failure_url = failure_redirect_to or f"{context.origin}/auth?oauth=error"
        url = (
            f"{self.settings.endpoint_with_version}/account/sessions/oauth2/{encode_path(provider)}"
            f"?project={quote(self.settings.appwrite_project_id.strip(), safe='')}"
            f"&success={quote(success_url, safe='')}"
            f"&failure={quote(failure_url, safe='')}"
        )

        context.redirect_to = url
        context.oauth_pending = True
        return BackendResult(data={"provider": provider, "url": url})

    async def sign_out(self) -> BackendResult:
        """Delete the current session. Already signed out counts as success."""
        if not self.settings.has_auth_config:
            return BackendResult(error=auth_config_error())

        result = await self._gateway.request("DELETE", "/account/sessions/current")
        if result.error is not None and result.error.status != 401:
            return BackendResult(error=result.error)

        context = get_request_context()
        if context is not None:
            for name in session_cookie_names(self.settings.appwrite_project_id.strip()):
                context.cookies.pop(name, None)

        self._emit("SIGNED_OUT", None)
        return BackendResult()
