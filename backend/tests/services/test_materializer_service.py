from datetime import date, datetime, time, timedelta, timezone

import pytest

from classbook.core.enums import OccurrenceStatus
from classbook.database.session_utils import as_utc
from classbook.models.occurrence import ClassSeries, Occurrence
from classbook.services.materializer_service import OccurrenceMaterializer, iter_series_dates


def _series(**overrides):
    values = dict(
        tenant_id="t",
        title="Pilates",
        start_date=date(2026, 1, 5),  # Monday
        start_time=time(18, 0),
        duration_minutes=45,
        timezone="Europe/Zurich",
        recurrence_pattern={"frequency": "weekly", "interval": 1},
        recurrence_end_date=None,
        recurrence_end_count=None,
        blackout_dates=[],
    )
    values.update(overrides)
    return ClassSeries(**values)


def test_weekly_on_selected_weekdays():
    series = _series(recurrence_pattern={"frequency": "weekly", "interval": 1, "weekdays": [0, 2]})
    assert list(iter_series_dates(series, date(2026, 1, 18))) == [
        date(2026, 1, 5),
        date(2026, 1, 7),
        date(2026, 1, 12),
        date(2026, 1, 14),
    ]


def test_weekly_defaults_to_start_weekday_and_honors_interval():
    series = _series(recurrence_pattern={"frequency": "weekly", "interval": 2})
    assert list(iter_series_dates(series, date(2026, 2, 2))) == [
        date(2026, 1, 5),
        date(2026, 1, 19),
        date(2026, 2, 2),
    ]


def test_blackouts_are_skipped_but_count_towards_end_count():
    series = _series(
        recurrence_pattern={"frequency": "daily", "interval": 3},
        recurrence_end_count=3,
        blackout_dates=["2026-01-08"],
    )
    assert list(iter_series_dates(series, date(2026, 3, 1))) == [date(2026, 1, 5), date(2026, 1, 11)]


def test_end_date_stops_the_series():
    series = _series(
        recurrence_pattern={"frequency": "daily", "interval": 1},
        recurrence_end_date=date(2026, 1, 7),
    )
    assert list(iter_series_dates(series, date(2026, 12, 31))) == [
        date(2026, 1, 5),
        date(2026, 1, 6),
        date(2026, 1, 7),
    ]


def test_unknown_frequency_is_rejected():
    series = _series(recurrence_pattern={"frequency": "monthly"})
    with pytest.raises(ValueError):
        list(iter_series_dates(series, date(2026, 2, 1)))


def test_expand_keeps_local_time_across_dst(db, test_settings):
    series = _series(start_date=date(2026, 3, 23))  # DST starts 2026-03-29 in Zurich
    now = datetime(2026, 3, 22, tzinfo=timezone.utc)
    rows = OccurrenceMaterializer(db, test_settings).expand(series, now, now + timedelta(days=10))

    starts = [row["start_time"] for row in rows]
    assert starts == [
        datetime(2026, 3, 23, 17, 0, tzinfo=timezone.utc),
        datetime(2026, 3, 30, 16, 0, tzinfo=timezone.utc),
    ]
    assert rows[0]["end_time"] - rows[0]["start_time"] == timedelta(minutes=45)


def test_run_is_idempotent_and_skips_past_dates(db, test_settings, make_series):
    series = make_series(start_date=date(2026, 3, 16), pattern={"frequency": "weekly", "weekdays": [0, 3]})
    now = datetime(2026, 3, 20, tzinfo=timezone.utc)
    materializer = OccurrenceMaterializer(db, test_settings)

    first = materializer.run(horizon_days=14, now=now)
    second = materializer.run(horizon_days=14, now=now)

    assert first["seriesProcessed"] == 1
    assert first["occurrencesCreated"] == 4
    assert first["errors"] == 0
    assert second["occurrencesCreated"] == 0
    occurrences = db.query(Occurrence).filter_by(series_id=series.id).order_by(Occurrence.start_time).all()
    assert [as_utc(o.start_time).date() for o in occurrences] == [
        date(2026, 3, 23),
        date(2026, 3, 26),
        date(2026, 3, 30),
        date(2026, 4, 2),
    ]
    assert all(o.capacity == 12 and o.price_minor == 2500 for o in occurrences)
    assert all(o.status == OccurrenceStatus.SCHEDULED.value for o in occurrences)


def test_broken_series_does_not_stop_the_run(db, test_settings, make_series):
    make_series(start_date=date(2026, 3, 16), pattern={"frequency": "fortnightly"})
    make_series(start_date=date(2026, 3, 16))
    now = datetime(2026, 3, 15, tzinfo=timezone.utc)

    summary = OccurrenceMaterializer(db, test_settings).run(horizon_days=7, now=now)

    assert summary["errors"] == 1
    assert summary["seriesProcessed"] == 1
    assert summary["occurrencesCreated"] == 1


def test_housekeeping_completes_past_occurrences(db, test_settings, make_occurrence):
    past = make_occurrence(starts_in=-timedelta(days=2))
    upcoming = make_occurrence(starts_in=timedelta(days=2))

    result = OccurrenceMaterializer(db, test_settings).housekeeping()

    assert result["status"] == "success"
    assert result["occurrencesCompleted"] == 1
    db.expire_all()
    assert db.get(Occurrence, past.id).status == OccurrenceStatus.COMPLETED.value
    assert db.get(Occurrence, upcoming.id).status == OccurrenceStatus.SCHEDULED.value


def test_generate_reports_both_phases(db, test_settings):
    result = OccurrenceMaterializer(db, test_settings).generate(horizon_days=30)
    assert result["generation"]["seriesProcessed"] == 0
    assert result["partitionMaintenance"] == "success"
    assert result["processedAt"]
