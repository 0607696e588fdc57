from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from signal_loader.jobs.common.time_window import (TimeWindow, calculate_window, from_epoch_seconds,
                                                   to_epoch_seconds)

NOW = datetime(2024, 1, 27, 15, 0, 0)
DAY = 24 * 3600


def _job(last_watermark=None, period=3600):
    return SimpleNamespace(code='job_a', last_watermark=last_watermark, max_query_period_seconds=period)


def test_first_run_uses_default_lookback():
    window = calculate_window(_job(), NOW, DAY)
    assert window.from_time == NOW - timedelta(days=1)
    assert window.to_time == NOW - timedelta(days=1) + timedelta(hours=1)


def test_window_starts_at_watermark_and_is_capped_by_period():
    watermark = NOW - timedelta(hours=10)
    window = calculate_window(_job(watermark, period=2 * 3600), NOW, DAY)
    assert window.from_time == watermark
    assert window.to_time == watermark + timedelta(hours=2)
    assert window.duration_seconds == 7200


def test_window_is_capped_by_now():
    watermark = NOW - timedelta(minutes=30)
    window = calculate_window(_job(watermark, period=3600), NOW, DAY)
    assert window.to_time == NOW
    assert not window.is_empty


def test_future_watermark_falls_back_to_lookback():
    window = calculate_window(_job(NOW + timedelta(hours=2)), NOW, DAY)
    assert window.from_time == NOW - timedelta(days=1)


def test_watermark_at_now_gives_empty_window():
    window = calculate_window(_job(NOW), NOW, DAY)
    assert window.is_empty
    assert window.duration_seconds == 0


def test_invalid_arguments_are_rejected():
    with pytest.raises(ValueError):
        calculate_window(_job(), NOW, 0)
    with pytest.raises(ValueError):
        calculate_window(_job(period=0), NOW, DAY)


def test_shifted_moves_both_bounds():
    window = TimeWindow(datetime(2024, 1, 27, 14), datetime(2024, 1, 27, 15))
    local = window.shifted(-4)
    assert local.from_time == datetime(2024, 1, 27, 10)
    assert local.to_time == datetime(2024, 1, 27, 11)
    assert window.shifted(0) == window


def test_epoch_helpers():
    moment = datetime(2024, 1, 27, 10, 0, 0)
    assert to_epoch_seconds(moment) == 1706349600
    assert from_epoch_seconds(1706349600) == moment
    assert TimeWindow(moment, moment + timedelta(hours=5)).epoch_bounds() == (1706349600, 1706367600)
