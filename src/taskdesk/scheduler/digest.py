"""
Daily notification digest.

At most one `daily_digest` notification per user per day, summarizing
how many other notifications arrived in the last 24 hours.
"""

import logging
from datetime import datetime, timedelta, timezone

from taskdesk.db.adapter import DatabaseAdapter
from taskdesk.db.schema import utc_now_iso
from taskdesk.scheduler.ids import digest_notification_id, is_duplicate_insert_error

logger = logging.getLogger(__name__)

DIGEST_TYPE = "daily_digest"


async def generate_notification_digest(db: DatabaseAdapter, user_id: str, now: datetime | None = None) -> bool:
    """
    Create today's digest for a user if they opted in and had activity.

    Returns True when a digest notification was created. Raises the
    BackendError of a failed insert (other than a duplicate).
    """
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

    prefs = await (
        db.table("notification_preferences")
        .select("digest_enabled, email_enabled")
        .eq("user_id", user_id)
        .limit(1)
        .maybe_single()
        .execute()
    )
    if not prefs.data or not prefs.data.get("digest_enabled"):
        return False

    day_key = f"{moment:%Y-%m-%d}"
    notification_id = digest_notification_id(user_id, moment.date())

    existing = await db.table("notifications").select("id").eq("id", notification_id).maybe_single().execute()
    if existing.data:
        return False

    recent = await (
        db.table("notifications")
        .select("id", count="exact")
        .eq("user_id", user_id)
        .neq("type", DIGEST_TYPE)
        .gte("created_at", utc_now_iso(moment - timedelta(hours=24)))
        .limit(1)
        .execute()
    )
    updates = recent.count or 0
    if updates == 0:
        return False

    inserted = await db.table("notifications").insert({
        "id": notification_id,
        "user_id": user_id,
        "type": DIGEST_TYPE,
        "title": f"Daily Digest {day_key}",
        "message": f"You have {updates} update(s) in the last 24 hours.",
        "entity_type": None,
        "entity_id": None,
        "read": False,
    }).execute()

    if inserted.error is not None:
        if is_duplicate_insert_error(inserted.error):
            return False
        raise inserted.error

    if prefs.data.get("email_enabled"):
        # Delivery is handled by a store-side function watching notifications
        logger.info("Queued digest email for %s (%d updates)", user_id, updates)
    return True
