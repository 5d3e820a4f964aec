"""
Global notification configuration (a single row).
"""

from typing import List, Dict, Any
from datetime import datetime
from sqlalchemy import Boolean, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from certkeeper.core.database import Base, utcnow


DEFAULT_THRESHOLD_DAYS = (90, 60, 30, 14, 7, 1)


def default_thresholds() -> List[Dict[str, Any]]:
    return [{"days": days, "enabled": True} for days in DEFAULT_THRESHOLD_DAYS]


class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # [{days, enabled}]
    thresholds: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=default_thresholds)
    # [{type: email|user|role, value}]
    recipients: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    schedule_hour: Mapped[int] = mapped_column(Integer, default=8)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def enabled_threshold_days(self) -> List[int]:
        """Enabled thresholds, longest lead time first."""
        days = {int(t["days"]) for t in self.thresholds or [] if t.get("enabled", True)}
        return sorted(days, reverse=True)
