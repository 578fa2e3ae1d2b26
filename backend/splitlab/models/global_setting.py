"""Global setting model."""
from sqlalchemy import Column, String, Text, DateTime

from splitlab.database import Base
from splitlab.timeutils import utcnow


class GlobalSetting(Base):
    """Key/value runtime setting editable without a deploy (e.g. retention windows)."""

    __tablename__ = "global_settings"

    key = Column(String(200), primary_key=True)
    value = Column(Text, default="")
    description = Column(Text, default="")
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<GlobalSetting {self.key}>"
