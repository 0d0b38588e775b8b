from sqlalchemy.orm import Session

from app.models.activity import ActivityAction, ActivityLog
from app.services.common import coerce_uuid


class Activities:
    @staticmethod
    def record(
        db: Session,
        user_id,
        action: ActivityAction,
        record_id=None,
        folder_id=None,
        subject_name: str | None = None,
        details: dict | None = None,
    ) -> ActivityLog:
        """Stage an activity row; it commits with the caller's transaction."""
        entry = ActivityLog(
            user_id=coerce_uuid(user_id),
            action=action,
            record_id=coerce_uuid(record_id),
            folder_id=coerce_uuid(folder_id),
            subject_name=subject_name,
            details=details,
        )
        db.add(entry)
        return entry

    @staticmethod
    def list(db: Session, user_id, limit: int = 50, offset: int = 0):
        return (
            db.query(ActivityLog)
            .filter(ActivityLog.user_id == coerce_uuid(user_id))
            .order_by(ActivityLog.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )


activities = Activities()
