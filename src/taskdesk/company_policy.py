"""
Company access policy.

Maps configured admin/manager emails to privileged roles and decides
whether an email may use the application when allowlist mode is on.
"""

from typing import Literal

from taskdesk.config import Settings

COMPANY_ACCESS_ERROR = "Access restricted: only approved company members can use this application."

PrivilegedRole = Literal["admin", "manager"]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def get_privileged_email_role(email: str | None, settings: Settings) -> PrivilegedRole | None:
    """Return the role granted to an email by configuration, if any."""
    if not email:
        return None
    normalized = normalize_email(email)
    if normalized in settings.admin_emails:
        return "admin"
    if normalized in settings.manager_emails:
        return "manager"
    return None


def get_company_allowed_emails(settings: Settings) -> list[str]:
    """Allowed emails: privileged emails first, then the configured allowlist."""
    merged = [*settings.admin_emails, *settings.manager_emails, *settings.allowed_emails]
    return list(dict.fromkeys(merged))


def is_company_email_allowed(email: str | None, settings: Settings) -> bool:
    if settings.company_access_mode == "open":
        return True
    if not email:
        return False
    return normalize_email(email) in get_company_allowed_emails(settings)


def company_policy_summary(settings: Settings) -> str:
    if settings.company_access_mode == "open":
        return "Company access mode: open."
    allowed = get_company_allowed_emails(settings)
    return f"Company access mode: allowlist ({len(allowed)} approved email(s))."
