"""
Taskdesk - Request Context for interactive sessions.

Uses a context variable to carry the interactive request (cookies, URL,
pending OAuth flag) through the gateway and auth bridge without threading
it through every call. No context set means server context: cron jobs and
scripts that authenticate with the privileged API key instead of cookies.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Iterator, Optional


@dataclass
class RequestContext:
    """State of one interactive request."""

    cookies: dict[str, str] = field(default_factory=dict)
    path: str = "/"
    query: dict[str, str] = field(default_factory=dict)
    origin: str = ""
    oauth_pending: bool = False
    redirect_to: str | None = None  # Set by OAuth sign-in; the web layer redirects

    def consume_oauth_pending(self) -> bool:
        pending = self.oauth_pending
        self.oauth_pending = False
        return pending


_request_context: ContextVar[Optional[RequestContext]] = ContextVar("request_context", default=None)


def set_request_context(context: RequestContext | None):
    """
    Set the interactive context for the current request.

    Call this at the start of request handling. Returns a token for reset.
    """
    return _request_context.set(context)


def get_request_context() -> RequestContext | None:
    """Get the current request's context, None in server context."""
    return _request_context.get()


def clear_request_context():
    """Clear the request context (call at end of request)."""
    _request_context.set(None)


def is_interactive() -> bool:
    return _request_context.get() is not None


@contextmanager
def request_context(context: RequestContext) -> Iterator[RequestContext]:
    """Scope a RequestContext to a block."""
    token = _request_context.set(context)
    try:
        yield context
    finally:
        _request_context.reset(token)


def session_cookie_names(project_id: str) -> list[str]:
    names = ["tm_auth"]
    if project_id:
        base = f"a_session_{project_id}"
        names.extend([base, f"{base}_legacy"])
    return names


def has_session_cookie(context: RequestContext, project_id: str) -> bool:
    """Whether the request carries a plausible store session cookie."""
    return any(context.cookies.get(name) for name in session_cookie_names(project_id))


def should_probe_account_on_auth_callback(context: RequestContext) -> bool:
    """
    Whether this request is an OAuth or magic-link callback.

    Those are the cases where the store may have just set an httpOnly
    session cookie we cannot see yet. Consumes the pending-OAuth flag.
    """
    oauth_success = context.query.get("oauth") == "success"
    if oauth_success:
        context.consume_oauth_pending()

    is_auth_route = context.path.startswith("/auth")
    has_magic_link_params = bool(context.query.get("userId") and context.query.get("secret"))
    return is_auth_route and (oauth_success or has_magic_link_params)
