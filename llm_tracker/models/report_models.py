from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from llm_tracker.db.engine import Base
from llm_tracker.models.user_models import new_id

REPORT_TYPES = ("keyword_tracking", "competitor_analysis", "citation_analysis")
REPORT_STATUSES = ("pending", "processing", "completed", "failed")


class Report(Base):
    """
    One generated report for a project.

    For keyword tracking reports `results` holds:
      - summary: total_keywords, brand_mentioned, average_confidence
      - keywords: one mention record per analysed keyword
      - failed_keywords: keywords whose analysis errored
    """
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    report_type = Column(String, nullable=False, default="keyword_tracking")
    status = Column(String, nullable=False, default="pending")

    # "metadata" is reserved on declarative classes
    report_metadata = Column("metadata", JSON, nullable=False, default=dict)
    results = Column(JSON, nullable=False, default=dict)

    pdf_url = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    project = relationship("Project", back_populates="reports")
    api_responses = relationship(
        "ApiResponse",
        back_populates="report",
        cascade="all, delete-orphan",
    )


class ApiResponse(Base):
    """
    Raw LLM output for a single keyword inside a report.
    """
    __tablename__ = "api_responses"

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(
        String(36),
        ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    provider = Column(String, nullable=False)
    keyword = Column(String, nullable=False)

    # {"analysis": "<full model answer>"}
    raw_response = Column(JSON, nullable=False)

    # Parsed mention record (brand_mentioned, position, confidence, context, competitors)
    response_metadata = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

    report = relationship("Report", back_populates="api_responses")
