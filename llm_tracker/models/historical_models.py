from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from llm_tracker.db.engine import Base
from llm_tracker.models.user_models import new_id


class HistoricalSnapshot(Base):
    """
    One observation of a brand (the project's own or a competitor) for one
    keyword at one point in time. Trend charts are built from these rows.
    """
    __tablename__ = "historical_snapshots"

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    keyword_id = Column(
        String(36),
        ForeignKey("keywords.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Keyword text kept so history survives keyword deletion
    keyword = Column(String, nullable=False)

    competitor_name = Column(String, nullable=False, index=True)
    position = Column(Integer, nullable=True)
    mention_count = Column(Integer, nullable=False, default=0)
    sentiment_score = Column(Float, nullable=False, default=0.5)
    market_share = Column(Float, nullable=False, default=0.0)

    snapshot_date = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # "api_response", "manual", "scheduled"
    data_source = Column(String, nullable=False, default="api_response")
    snapshot_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

    project = relationship("Project", back_populates="snapshots")


class TrackingSchedule(Base):
    __tablename__ = "tracking_schedules"

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    keyword_id = Column(
        String(36),
        ForeignKey("keywords.id", ondelete="CASCADE"),
        nullable=False,
    )

    frequency = Column(String, nullable=False, default="on_demand")  # daily/weekly/monthly/on_demand
    priority = Column(String, nullable=False, default="medium")      # high/medium/low

    last_run = Column(DateTime, nullable=True)
    next_run = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    project = relationship("Project", back_populates="schedules")

    __table_args__ = (
        UniqueConstraint("keyword_id", name="uq_tracking_schedule_keyword"),
    )
