"""Tests for snapshot history, trend metrics and tracking schedules."""

import pytest
from datetime import datetime, timedelta

from llm_tracker.models.historical_models import HistoricalSnapshot, TrackingSchedule
from llm_tracker.models.project_models import Project, Keyword
from llm_tracker.models.report_models import Report, ApiResponse
from llm_tracker.models.user_models import User, new_id
from llm_tracker.services.historical_tracking import (
    calculate_mention_trend,
    calculate_position_velocity,
    calculate_sentiment_trend,
    calculate_trend_metrics,
    compute_next_run,
    get_historical_data,
    migrate_report_history,
    record_snapshots,
    setup_tracking_schedule,
)

NOW = datetime(2024, 1, 10, 12, 0, 0)  # a Wednesday


def _result(brand_position, globex_position, brand_mentioned=True):
    return {
        "keyword": "crm software",
        "brand_mentioned": brand_mentioned,
        "position": brand_position,
        "confidence": 80,
        "context": "",
        "competitors": [
            {"name": "Globex", "mentioned": True, "position": globex_position, "context": ""},
            {"name": "Initech", "mentioned": False, "position": None, "context": ""},
        ],
    }


@pytest.fixture
def project(db_session):
    user = User(id=new_id(), email="history@example.com", hashed_password="x")
    project = Project(
        id=new_id(),
        user_id=user.id,
        name="History",
        brand_name="Acme",
        competitors=["Globex", "Initech"],
    )
    db_session.add_all([user, project])
    db_session.flush()
    return project


class TestComputeNextRun:

    def test_daily(self):
        assert compute_next_run("daily", datetime(2024, 1, 10, 8, 0)) == datetime(2024, 1, 10, 9, 0)
        assert compute_next_run("daily", datetime(2024, 1, 10, 10, 0)) == datetime(2024, 1, 11, 9, 0)

    def test_weekly(self):
        assert compute_next_run("weekly", NOW) == datetime(2024, 1, 14, 9, 0)
        # on a Sunday the next run is a full week away
        assert compute_next_run("weekly", datetime(2024, 1, 14, 7, 0)) == datetime(2024, 1, 21, 9, 0)

    def test_monthly(self):
        assert compute_next_run("monthly", NOW) == datetime(2024, 2, 1, 9, 0)
        assert compute_next_run("monthly", datetime(2024, 12, 20)) == datetime(2025, 1, 1, 9, 0)

    def test_on_demand(self):
        assert compute_next_run("on_demand", NOW).year == 2099

    def test_unknown(self):
        with pytest.raises(ValueError):
            compute_next_run("hourly", NOW)


class TestRecordSnapshots:

    def test_one_row_per_brand(self, db_session, project):
        snapshots = record_snapshots(db_session, project, _result(2, 1), when=NOW)
        db_session.flush()

        by_name = {s.competitor_name: s for s in snapshots}
        assert set(by_name) == {"Acme", "Globex", "Initech"}

        assert by_name["Acme"].position == 2
        assert by_name["Acme"].mention_count == 1
        assert by_name["Acme"].market_share == 0.5
        assert by_name["Acme"].sentiment_score == 0.5
        assert by_name["Acme"].snapshot_metadata["is_target_brand"] is True

        assert by_name["Initech"].mention_count == 0
        assert by_name["Initech"].market_share == 0.0
        assert by_name["Initech"].position is None


class TestHistoricalData:

    def test_daily_series(self, db_session, project):
        record_snapshots(db_session, project, _result(4, 1), when=NOW - timedelta(days=2))
        record_snapshots(db_session, project, _result(2, 3), when=NOW - timedelta(days=1, hours=2))
        record_snapshots(db_session, project, _result(4, 3), when=NOW - timedelta(days=1, hours=1))
        db_session.flush()

        series = get_historical_data(db_session, project.id, time_range="7d", now=NOW)

        assert [s["competitor"] for s in series] == ["Acme", "Globex", "Initech"]

        acme = series[0]
        assert [p["position"] for p in acme["data"]] == [4, 3]
        assert [p["mentions"] for p in acme["data"]] == [1, 2]
        assert acme["current_position"] == 3
        # fewer points than the lookback window
        assert acme["position_change"] == 0
        assert acme["trend_direction"] == "stable"

    def test_filters(self, db_session, project):
        record_snapshots(db_session, project, _result(2, 1), when=NOW - timedelta(days=1))
        old = dict(_result(5, 5), keyword="old keyword")
        record_snapshots(db_session, project, old, when=NOW - timedelta(days=20))
        db_session.flush()

        series = get_historical_data(
            db_session, project.id, time_range="7d", competitors=["Globex"], now=NOW,
        )
        assert len(series) == 1
        assert series[0]["competitor"] == "Globex"
        assert len(series[0]["data"]) == 1

        series = get_historical_data(
            db_session, project.id, keyword="old keyword", time_range="30d", now=NOW,
        )
        assert series[0]["data"][0]["position"] == 5

    def test_position_change_uses_lookback(self, db_session, project):
        for days_ago, position in zip(range(9, 0, -1), [9, 9, 8, 7, 6, 5, 4, 3, 2]):
            record_snapshots(db_session, project, _result(position, 1), when=NOW - timedelta(days=days_ago))
        db_session.flush()

        acme = get_historical_data(
            db_session, project.id, time_range="30d", competitors=["Acme"], now=NOW,
        )[0]
        assert acme["current_position"] == 2
        # eighth point from the end is 9
        assert acme["position_change"] == 7
        assert acme["trend_direction"] == "up"

    def test_unknown_time_range(self, db_session, project):
        with pytest.raises(ValueError):
            get_historical_data(db_session, project.id, time_range="2w")


class TestTrendCalculations:

    def _points(self, positions, mentions):
        return [
            {"position": p, "mentions": m, "sentiment": 0.5}
            for p, m in zip(positions, mentions)
        ]

    def test_velocity_and_mentions(self):
        data = self._points([5] * 7 + [3] * 7, [1] * 7 + [2] * 7)

        assert calculate_position_velocity(data) == 2.0
        assert calculate_mention_trend(data) == 100.0
        assert calculate_sentiment_trend(data) == 0.0

    def test_too_few_points(self):
        data = self._points([1], [1])
        assert calculate_position_velocity(data) == 0.0
        assert calculate_mention_trend(data) == 0.0

    def test_zero_older_mentions(self):
        data = self._points([1] * 14, [0] * 7 + [3] * 7)
        assert calculate_mention_trend(data) == 0.0

    def test_trend_metrics(self, db_session, project):
        record_snapshots(db_session, project, _result(3, 1), when=NOW - timedelta(days=2))
        record_snapshots(db_session, project, _result(2, 1), when=NOW - timedelta(days=1))
        db_session.flush()

        metrics = calculate_trend_metrics(db_session, project.id, "Acme", time_range="7d", now=NOW)

        assert [m["metric_type"] for m in metrics] == [
            "position_velocity", "mention_trend", "sentiment_trend",
        ]
        assert [m["confidence_score"] for m in metrics] == [0.85, 0.78, 0.82]
        assert all(m["time_period"] == "daily" for m in metrics)

    def test_trend_metrics_need_two_points(self, db_session, project):
        record_snapshots(db_session, project, _result(3, 1), when=NOW - timedelta(days=1))
        db_session.flush()

        assert calculate_trend_metrics(db_session, project.id, "Acme", now=NOW) == []


class TestSchedules:

    def test_upsert(self, db_session, project):
        keyword = Keyword(id=new_id(), project_id=project.id, keyword="crm software")
        db_session.add(keyword)
        db_session.flush()

        first = setup_tracking_schedule(db_session, project.id, keyword.id, "daily", "high", now=NOW)
        second = setup_tracking_schedule(db_session, project.id, keyword.id, "monthly", now=NOW)

        assert first.id == second.id
        assert second.frequency == "monthly"
        assert second.priority == "medium"
        assert second.next_run == datetime(2024, 2, 1, 9, 0)
        assert db_session.query(TrackingSchedule).count() == 1

    def test_invalid_priority(self, db_session, project):
        with pytest.raises(ValueError):
            setup_tracking_schedule(db_session, project.id, "kw", "daily", "urgent")


class TestMigrateReportHistory:

    def test_backfills_once(self, db_session, project):
        keyword = Keyword(id=new_id(), project_id=project.id, keyword="crm software")
        report = Report(
            id=new_id(),
            project_id=project.id,
            user_id=project.user_id,
            status="completed",
            results={},
            report_metadata={},
        )
        db_session.add_all([keyword, report])
        db_session.flush()

        db_session.add(
            ApiResponse(
                report_id=report.id,
                provider="openai",
                keyword="crm software",
                raw_response={"analysis": ""},
                response_metadata=_result(2, 1),
            )
        )
        db_session.flush()

        summary = migrate_report_history(db_session, project)

        assert summary["reports_processed"] == 1
        assert summary["snapshots_created"] == 3
        assert summary["schedules_created"] == 1

        again = migrate_report_history(db_session, project)
        assert again["snapshots_created"] == 0
        assert again["schedules_created"] == 0
        assert db_session.query(HistoricalSnapshot).count() == 3

    def test_parses_raw_answer_when_metadata_missing(self, db_session, project, sample_answer):
        report = Report(
            id=new_id(),
            project_id=project.id,
            user_id=project.user_id,
            status="completed",
            results={},
            report_metadata={},
        )
        db_session.add(report)
        db_session.flush()
        db_session.add(
            ApiResponse(
                report_id=report.id,
                provider="openai",
                keyword="crm software",
                raw_response={"analysis": sample_answer},
                response_metadata={},
            )
        )
        db_session.flush()

        migrate_report_history(db_session, project)

        acme = (
            db_session.query(HistoricalSnapshot)
            .filter(HistoricalSnapshot.competitor_name == "Acme")
            .one()
        )
        assert acme.position == 2
        assert acme.keyword == "crm software"
