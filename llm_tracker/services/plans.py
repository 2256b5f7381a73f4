# llm_tracker/services/plans.py

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from llm_tracker.config import TRIAL_DAYS
from llm_tracker.models.project_models import Project, Keyword
from llm_tracker.models.report_models import Report
from llm_tracker.models.user_models import Profile

logger = logging.getLogger(__name__)

UNLIMITED = -1

LIMIT_KINDS = ("projects", "keywords", "reports", "competitors")

PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "trial": {"projects": 1, "keywords": 10, "reports": 5, "competitors": 0},
    "basic": {"projects": 3, "keywords": 25, "reports": 15, "competitors": 1},
    "gold": {"projects": 10, "keywords": 50, "reports": 50, "competitors": UNLIMITED},
}

PAID_PLANS = ("basic", "gold")


class TrialExpiredError(Exception):
    """The account is on an expired trial and cannot create anything."""


class PlanLimitError(Exception):
    def __init__(self, kind: str, limit: int, usage: int):
        self.kind = kind
        self.limit = limit
        self.usage = usage
        super().__init__(
            f"Your plan allows {limit} {kind}; you are using {usage}. "
            "Upgrade your plan to add more."
        )


def get_plan_limits(plan: Optional[str]) -> Dict[str, int]:
    """
    Limits for a plan name. Unknown plans get an empty dict.
    """
    return dict(PLAN_LIMITS.get(plan or "", {}))


def is_trial_expired(profile: Profile, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    if profile.plan != "trial" or profile.trial_ends_at is None:
        return False
    return profile.trial_ends_at < now


def trial_days_remaining(profile: Profile, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    if profile.plan != "trial" or profile.trial_ends_at is None:
        return 0
    if is_trial_expired(profile, now):
        return 0
    seconds_left = (profile.trial_ends_at - now).total_seconds()
    return max(0, math.ceil(seconds_left / 86400))


def check_limit_reached(limits: Dict[str, int], usage: Dict[str, int], kind: str) -> bool:
    limit = limits.get(kind, 0)
    return limit != UNLIMITED and usage.get(kind, 0) >= limit


def usage_percentage(usage: int, limit: int) -> float:
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return min((usage / limit) * 100, 100.0)


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_usage(db: Session, user_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Current usage counters for a user:
      - projects: all projects
      - keywords: keywords across all of the user's projects
      - reports: reports created this calendar month
      - competitors: distinct competitor names across all projects
    """
    now = now or datetime.utcnow()

    projects = db.query(Project).filter(Project.user_id == user_id).all()

    keyword_count = (
        db.query(func.count(Keyword.id))
        .join(Project, Keyword.project_id == Project.id)
        .filter(Project.user_id == user_id)
        .scalar()
    ) or 0

    report_count = (
        db.query(func.count(Report.id))
        .filter(
            Report.user_id == user_id,
            Report.created_at >= _month_start(now),
        )
        .scalar()
    ) or 0

    competitor_names = set()
    for project in projects:
        competitor_names.update(project.competitors or [])

    return {
        "projects": len(projects),
        "keywords": int(keyword_count),
        "reports": int(report_count),
        "competitors": len(competitor_names),
    }


def ensure_can_create(
    db: Session,
    profile: Profile,
    kind: str,
    adding: int = 1,
    usage: Optional[Dict[str, int]] = None,
) -> None:
    """
    Raise TrialExpiredError / PlanLimitError if the user cannot add `adding`
    more items of `kind`.
    """
    if is_trial_expired(profile):
        raise TrialExpiredError("Your trial has expired. Upgrade to keep tracking.")

    limits = get_plan_limits(profile.plan)
    limit = limits.get(kind, 0)
    if limit == UNLIMITED:
        return

    usage = usage if usage is not None else get_usage(db, profile.id)
    current = usage.get(kind, 0)
    if current + adding > limit:
        logger.info(
            "Plan limit reached for user %s: %s %d/%d (adding %d)",
            profile.id, kind, current, limit, adding,
        )
        raise PlanLimitError(kind=kind, limit=limit, usage=current)


def apply_plan(profile: Profile, plan: str) -> None:
    """
    Switch a profile to `plan` and copy its limits onto the profile row.
    """
    limits = get_plan_limits(plan)
    if not limits:
        raise ValueError(f"Unknown plan: {plan}")

    profile.plan = plan
    profile.projects_limit = limits["projects"]
    profile.keywords_limit = limits["keywords"]
    profile.reports_limit = limits["reports"]


def start_trial(profile: Profile, now: Optional[datetime] = None) -> None:
    now = now or datetime.utcnow()
    apply_plan(profile, "trial")
    profile.trial_ends_at = now + timedelta(days=TRIAL_DAYS)


def plan_status(db: Session, profile: Profile, now: Optional[datetime] = None) -> dict:
    """
    Everything the dashboard needs to render plan usage bars and the
    trial banner.
    """
    now = now or datetime.utcnow()
    limits = get_plan_limits(profile.plan)
    usage = get_usage(db, profile.id, now=now)

    per_kind = {}
    for kind in LIMIT_KINDS:
        limit = limits.get(kind, 0)
        per_kind[kind] = {
            "limit": limit,
            "usage": usage.get(kind, 0),
            "percentage": usage_percentage(usage.get(kind, 0), limit),
            "reached": check_limit_reached(limits, usage, kind),
        }

    return {
        "plan": profile.plan,
        "limits": per_kind,
        "trial": {
            "is_trial_expired": is_trial_expired(profile, now),
            "days_remaining": trial_days_remaining(profile, now),
            "trial_ends_at": profile.trial_ends_at if profile.plan == "trial" else None,
        },
    }
