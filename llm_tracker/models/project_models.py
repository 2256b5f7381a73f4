from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    Text,
    JSON,
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.orm import relationship

from llm_tracker.db.engine import Base
from llm_tracker.models.user_models import new_id


class Project(Base):
    """
    A tracked brand plus the competitors it is compared against.
    """
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False)
    brand_name = Column(String, nullable=False)

    # Plain list of competitor names; always reassign, never mutate in place
    competitors = Column(JSON, nullable=False, default=list)

    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    keywords = relationship(
        "Keyword",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Keyword.created_at.desc()",
    )
    reports = relationship(
        "Report",
        back_populates="project",
        cascade="all, delete-orphan",
    )
    snapshots = relationship(
        "HistoricalSnapshot",
        back_populates="project",
        cascade="all, delete-orphan",
    )
    schedules = relationship(
        "TrackingSchedule",
        back_populates="project",
        cascade="all, delete-orphan",
    )


class Keyword(Base):
    __tablename__ = "keywords"

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    keyword = Column(String, nullable=False)

    # 1 (lowest) .. 5 (highest)
    priority = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)

    project = relationship("Project", back_populates="keywords")

    __table_args__ = (
        UniqueConstraint("project_id", "keyword", name="uq_keyword_project_keyword"),
        CheckConstraint("priority >= 1 AND priority <= 5", name="ck_keyword_priority"),
    )
