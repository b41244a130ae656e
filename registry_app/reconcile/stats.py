"""
Aggregate counts for the public stats endpoint and the moderation dashboard.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from registry_app.models import (
    ChangeSource,
    ChangeSourceType,
    ChangeType,
    CommunitySubmission,
    Person,
    PersonVersion,
    SubmissionStatus,
    db,
)


def public_stats(session: Session | None = None) -> dict[str, int]:
    session = session or db.session
    live = session.query(Person).filter(Person.is_deleted.is_(False))
    total = live.count()
    deceased = live.filter(Person.date_of_death.isnot(None)).count()
    return {"total": total, "deceased": deceased, "alive": total - deceased}


def moderation_stats(session: Session | None = None, *, recent_days: int = 7) -> dict[str, Any]:
    """Public counts plus moderation queue and recent change activity."""

    session = session or db.session
    since = datetime.now(timezone.utc) - timedelta(days=max(1, recent_days))

    pending = (
        session.query(func.count(CommunitySubmission.id))
        .filter(CommunitySubmission.status == SubmissionStatus.PENDING)
        .scalar()
    )
    deleted = session.query(func.count(Person.id)).filter(Person.is_deleted.is_(True)).scalar()
    recently_added = (
        session.query(func.count(PersonVersion.id))
        .filter(PersonVersion.change_type == ChangeType.INSERT, PersonVersion.created_at >= since)
        .scalar()
    )

    by_source = {source_type.value: 0 for source_type in ChangeSourceType}
    rows = (
        session.query(ChangeSource.type, func.count(func.distinct(PersonVersion.person_id)))
        .join(PersonVersion, PersonVersion.change_source_id == ChangeSource.id)
        .filter(PersonVersion.change_type == ChangeType.UPDATE, PersonVersion.created_at >= since)
        .group_by(ChangeSource.type)
        .all()
    )
    for source_type, count in rows:
        by_source[source_type.value] = int(count)

    return {
        **public_stats(session),
        "pending_submissions": int(pending or 0),
        "deleted": int(deleted or 0),
        "recent_days": max(1, recent_days),
        "recently_added": int(recently_added or 0),
        "updated_by_community": by_source[ChangeSourceType.COMMUNITY_SUBMISSION.value],
        "updated_by_bulk_upload": by_source[ChangeSourceType.BULK_UPLOAD.value],
        "updated_by_source": by_source,
    }
