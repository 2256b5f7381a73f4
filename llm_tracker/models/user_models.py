# llm_tracker/models/user_models.py

import uuid
from datetime import datetime

from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey
from sqlalchemy.orm import relationship

from llm_tracker.db.engine import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    Login identity. Everything a user owns hangs off `users.id`.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)

    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship(
        "Profile",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )


class Profile(Base):
    """
    Per-user account info and plan state.

    One row per user, created at signup. `plan` is one of
    "trial", "basic", "gold"; the *_limit columns mirror the plan so they can
    be shown without a lookup.
    """
    __tablename__ = "profiles"

    id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    email = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    company = Column(String, nullable=True)

    plan = Column(String, nullable=False, default="trial")
    plan_expires_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)

    projects_limit = Column(Integer, nullable=False, default=1)
    keywords_limit = Column(Integer, nullable=False, default=10)
    reports_limit = Column(Integer, nullable=False, default=5)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    user = relationship("User", back_populates="profile")
