from datetime import datetime

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey

from llm_tracker.db.engine import Base
from llm_tracker.models.user_models import new_id


class Subscriber(Base):
    """
    Stripe subscription state for a user, refreshed by check-subscription
    and the webhook.
    """
    __tablename__ = "subscribers"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email = Column(String, unique=True, index=True, nullable=False)

    stripe_customer_id = Column(String, nullable=True, index=True)
    subscribed = Column(Boolean, nullable=False, default=False)
    subscription_tier = Column(String, nullable=True)   # "basic" / "gold"
    subscription_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )
