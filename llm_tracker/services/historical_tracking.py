# llm_tracker/services/historical_tracking.py

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from llm_tracker.models.historical_models import HistoricalSnapshot, TrackingSchedule
from llm_tracker.models.project_models import Project, Keyword
from llm_tracker.models.report_models import Report, ApiResponse
from llm_tracker.services.brand_analysis import parse_brand_analysis

logger = logging.getLogger(__name__)

TIME_RANGES = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
}

FREQUENCIES = ("daily", "weekly", "monthly", "on_demand")
SCHEDULE_PRIORITIES = ("high", "medium", "low")

# The model does not score sentiment, so every observation is neutral
NEUTRAL_SENTIMENT = 0.5

# Scheduled runs fire at 09:00 UTC
RUN_HOUR = 9

# How far back position_change looks (points, not days)
POSITION_CHANGE_LOOKBACK = 8
TREND_WINDOW = 7


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def record_snapshots(
    db: Session,
    project: Project,
    result: Dict[str, Any],
    keyword_id: Optional[str] = None,
    report_id: Optional[str] = None,
    api_response_id: Optional[str] = None,
    when: Optional[datetime] = None,
    data_source: str = "api_response",
) -> List[HistoricalSnapshot]:
    """
    Store one snapshot for the project's brand and one per competitor found
    in a parsed mention record.

    market_share is this brand's share of all brands mentioned in the answer.
    """
    when = when or datetime.utcnow()
    keyword = result.get("keyword") or ""

    observations = [
        {
            "name": project.brand_name,
            "mentioned": bool(result.get("brand_mentioned")),
            "position": result.get("position"),
            "is_target_brand": True,
        }
    ]
    for comp in result.get("competitors") or []:
        if not comp.get("name"):
            continue
        observations.append(
            {
                "name": comp["name"],
                "mentioned": bool(comp.get("mentioned")),
                "position": comp.get("position"),
                "is_target_brand": False,
            }
        )

    mentioned_total = sum(1 for o in observations if o["mentioned"])

    snapshots: List[HistoricalSnapshot] = []
    for obs in observations:
        share = (1.0 / mentioned_total) if (obs["mentioned"] and mentioned_total) else 0.0
        snapshot = HistoricalSnapshot(
            project_id=project.id,
            keyword_id=keyword_id,
            keyword=keyword,
            competitor_name=obs["name"],
            position=obs["position"] if obs["mentioned"] else None,
            mention_count=1 if obs["mentioned"] else 0,
            sentiment_score=NEUTRAL_SENTIMENT,
            market_share=share,
            snapshot_date=when,
            data_source=data_source,
            snapshot_metadata={
                "report_id": report_id,
                "api_response_id": api_response_id,
                "keyword": keyword,
                "provider": "openai",
                "is_target_brand": obs["is_target_brand"],
            },
        )
        db.add(snapshot)
        snapshots.append(snapshot)

    return snapshots


def get_historical_data(
    db: Session,
    project_id: str,
    keyword: Optional[str] = None,
    time_range: str = "30d",
    competitors: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Daily series per brand over `time_range`.

    Each point is {date, position, mentions, sentiment, competitor} with the
    day's average position, summed mentions and average sentiment. Each
    series also carries current_position, position_change (positive means the
    brand moved up the ranking) and trend_direction.
    """
    if time_range not in TIME_RANGES:
        raise ValueError(f"Unknown time range: {time_range}")

    now = now or datetime.utcnow()
    start = now - timedelta(days=TIME_RANGES[time_range])

    query = db.query(HistoricalSnapshot).filter(
        HistoricalSnapshot.project_id == project_id,
        HistoricalSnapshot.snapshot_date >= start,
        HistoricalSnapshot.snapshot_date <= now,
    )
    if keyword:
        query = query.filter(
            or_(
                HistoricalSnapshot.keyword_id == keyword,
                HistoricalSnapshot.keyword == keyword,
            )
        )
    if competitors:
        query = query.filter(HistoricalSnapshot.competitor_name.in_(competitors))

    rows = query.order_by(HistoricalSnapshot.snapshot_date).all()

    # competitor -> day -> bucket
    buckets: Dict[str, "OrderedDict[str, Dict[str, list]]"] = {}
    for row in rows:
        day = row.snapshot_date.date().isoformat()
        per_day = buckets.setdefault(row.competitor_name, OrderedDict())
        bucket = per_day.setdefault(day, {"positions": [], "mentions": [], "sentiments": []})
        if row.position is not None:
            bucket["positions"].append(row.position)
        bucket["mentions"].append(row.mention_count or 0)
        bucket["sentiments"].append(row.sentiment_score)

    names = list(competitors) if competitors else sorted(buckets.keys())

    series: List[Dict[str, Any]] = []
    for name in names:
        points = []
        for day, bucket in buckets.get(name, {}).items():
            avg_position = _mean(bucket["positions"])
            points.append(
                {
                    "date": day,
                    "position": round(avg_position) if avg_position is not None else None,
                    "mentions": sum(bucket["mentions"]),
                    "sentiment": _mean(bucket["sentiments"]),
                    "competitor": name,
                }
            )

        current_position = points[-1]["position"] if points else None
        if len(points) >= POSITION_CHANGE_LOOKBACK:
            previous_position = points[-POSITION_CHANGE_LOOKBACK]["position"]
        else:
            previous_position = current_position

        if current_position is None or previous_position is None:
            position_change = 0
        else:
            # lower position number is better
            position_change = previous_position - current_position

        if position_change > 0:
            direction = "up"
        elif position_change < 0:
            direction = "down"
        else:
            direction = "stable"

        series.append(
            {
                "competitor": name,
                "data": points,
                "current_position": current_position,
                "position_change": position_change,
                "trend_direction": direction,
            }
        )

    return series


def _window_means(data: List[Dict[str, Any]], field: str):
    recent = [d[field] for d in data[-TREND_WINDOW:] if d[field] is not None]
    older = [d[field] for d in data[-2 * TREND_WINDOW:-TREND_WINDOW] if d[field] is not None]
    return _mean(recent), _mean(older)


def calculate_position_velocity(data: List[Dict[str, Any]]) -> float:
    if len(data) < 2:
        return 0.0
    recent, older = _window_means(data, "position")
    if recent is None or older is None:
        return 0.0
    # positive means improvement (lower position number)
    return older - recent


def calculate_mention_trend(data: List[Dict[str, Any]]) -> float:
    """Percentage change in mentions between the older and recent windows."""
    if len(data) < 2:
        return 0.0
    recent, older = _window_means(data, "mentions")
    if recent is None or not older:
        return 0.0
    return ((recent - older) / older) * 100


def calculate_sentiment_trend(data: List[Dict[str, Any]]) -> float:
    if len(data) < 2:
        return 0.0
    recent, older = _window_means(data, "sentiment")
    if recent is None or older is None:
        return 0.0
    return recent - older


def _time_period(time_range: str) -> str:
    if time_range == "7d":
        return "daily"
    if time_range == "30d":
        return "weekly"
    return "monthly"


def calculate_trend_metrics(
    db: Session,
    project_id: str,
    competitor_name: str,
    keyword: Optional[str] = None,
    time_range: str = "30d",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    now = now or datetime.utcnow()
    history = get_historical_data(
        db,
        project_id,
        keyword=keyword,
        time_range=time_range,
        competitors=[competitor_name],
        now=now,
    )
    data = history[0]["data"] if history else []
    if len(data) < 2:
        return []

    period = _time_period(time_range)
    base = {
        "project_id": project_id,
        "keyword": keyword,
        "competitor_name": competitor_name,
        "time_period": period,
        "calculation_date": now,
    }

    mentions = [d["mentions"] for d in data]
    sentiments = [d["sentiment"] for d in data if d["sentiment"] is not None]

    return [
        dict(
            base,
            metric_type="position_velocity",
            trend_value=calculate_position_velocity(data),
            confidence_score=0.85,
            raw_data={"data_points": len(data)},
        ),
        dict(
            base,
            metric_type="mention_trend",
            trend_value=calculate_mention_trend(data),
            confidence_score=0.78,
            raw_data={"average_mentions": _mean(mentions)},
        ),
        dict(
            base,
            metric_type="sentiment_trend",
            trend_value=calculate_sentiment_trend(data),
            confidence_score=0.82,
            raw_data={"average_sentiment": _mean(sentiments)},
        ),
    ]


def compute_next_run(frequency: str, now: Optional[datetime] = None) -> datetime:
    """
    - daily: next 09:00
    - weekly: next Sunday 09:00 (a week ahead when today is Sunday)
    - monthly: 09:00 on the 1st of next month
    - on_demand: far future so it never comes due
    """
    now = now or datetime.utcnow()

    if frequency == "daily":
        next_run = now.replace(hour=RUN_HOUR, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return next_run

    if frequency == "weekly":
        # Python: Monday=0 .. Sunday=6; days counted from Sunday=0
        day_from_sunday = (now.weekday() + 1) % 7
        next_run = now + timedelta(days=7 - day_from_sunday)
        return next_run.replace(hour=RUN_HOUR, minute=0, second=0, microsecond=0)

    if frequency == "monthly":
        if now.month == 12:
            return datetime(now.year + 1, 1, 1, RUN_HOUR)
        return datetime(now.year, now.month + 1, 1, RUN_HOUR)

    if frequency == "on_demand":
        return datetime(2099, 12, 31, RUN_HOUR)

    raise ValueError(f"Unknown frequency: {frequency}")


def setup_tracking_schedule(
    db: Session,
    project_id: str,
    keyword_id: str,
    frequency: str,
    priority: str = "medium",
    now: Optional[datetime] = None,
) -> TrackingSchedule:
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown frequency: {frequency}")
    if priority not in SCHEDULE_PRIORITIES:
        raise ValueError(f"Unknown priority: {priority}")

    now = now or datetime.utcnow()

    schedule = (
        db.query(TrackingSchedule)
        .filter(TrackingSchedule.keyword_id == keyword_id)
        .one_or_none()
    )
    if not schedule:
        schedule = TrackingSchedule(project_id=project_id, keyword_id=keyword_id)
        db.add(schedule)

    schedule.frequency = frequency
    schedule.priority = priority
    schedule.next_run = compute_next_run(frequency, now)
    schedule.is_active = True
    db.flush()
    return schedule


def migrate_report_history(db: Session, project: Project) -> Dict[str, int]:
    """
    Rebuild snapshots from stored API responses of completed reports that
    have not been turned into history yet, then make sure every keyword has
    a tracking schedule.
    """
    reports = (
        db.query(Report)
        .filter(
            Report.project_id == project.id,
            Report.status == "completed",
        )
        .order_by(Report.created_at)
        .all()
    )

    seen_responses = set()
    for snap in (
        db.query(HistoricalSnapshot)
        .filter(
            HistoricalSnapshot.project_id == project.id,
            HistoricalSnapshot.data_source == "api_response",
        )
        .all()
    ):
        response_id = (snap.snapshot_metadata or {}).get("api_response_id")
        if response_id:
            seen_responses.add(response_id)

    keyword_ids = {k.keyword: k.id for k in project.keywords}

    snapshots_created = 0
    for report in reports:
        responses = (
            db.query(ApiResponse)
            .filter(ApiResponse.report_id == report.id)
            .all()
        )
        for response in responses:
            if response.id in seen_responses:
                continue

            record = dict(response.response_metadata or {})
            if "brand_mentioned" not in record:
                raw = (response.raw_response or {}).get("analysis") or ""
                record = parse_brand_analysis(raw, response.keyword, project.brand_name)
            record["keyword"] = response.keyword

            created = record_snapshots(
                db,
                project,
                record,
                keyword_id=keyword_ids.get(response.keyword),
                report_id=report.id,
                api_response_id=response.id,
                when=report.created_at,
            )
            snapshots_created += len(created)

    db.flush()

    trends_calculated = 0
    names = {
        name
        for (name,) in db.query(HistoricalSnapshot.competitor_name)
        .filter(HistoricalSnapshot.project_id == project.id)
        .distinct()
        .all()
    }
    for name in sorted(names):
        trends_calculated += len(calculate_trend_metrics(db, project.id, name))

    scheduled = {
        s.keyword_id
        for s in db.query(TrackingSchedule)
        .filter(TrackingSchedule.project_id == project.id)
        .all()
    }
    schedules_created = 0
    for kw in db.query(Keyword).filter(Keyword.project_id == project.id).all():
        if kw.id in scheduled:
            continue
        setup_tracking_schedule(db, project.id, kw.id, "on_demand")
        schedules_created += 1

    logger.info(
        "History migration for project %s: %d reports, %d snapshots, %d schedules",
        project.id, len(reports), snapshots_created, schedules_created,
    )

    return {
        "reports_processed": len(reports),
        "snapshots_created": snapshots_created,
        "trends_calculated": trends_calculated,
        "schedules_created": schedules_created,
    }
