import pytest

from nsloop.services.math.curves import CarbCurves, InsulinCurves


@pytest.mark.parametrize("peak,end", [(75, 300), (55, 300), (75, 360)])
def test_exponential_iob_boundaries(peak, end):
    assert InsulinCurves.exponential_iob(0, peak, end) == 1.0
    assert InsulinCurves.exponential_iob(end, peak, end) == 0.0
    assert 0 < InsulinCurves.exponential_iob(end / 2, peak, end) < 1


def test_exponential_iob_is_monotonic():
    values = [InsulinCurves.exponential_iob(t, 75, 300) for t in range(0, 301, 5)]
    assert all(a >= b for a, b in zip(values, values[1:]))


def test_exponential_activity_peaks_at_peak_time():
    activities = {t: InsulinCurves.exponential_activity(t, 75, 300) for t in range(5, 300, 5)}
    assert max(activities, key=activities.get) == 75


def test_exponential_activity_integrates_to_one():
    total = sum(InsulinCurves.exponential_activity(t + 0.5, 55, 300) for t in range(300))
    assert total == pytest.approx(1.0, abs=0.01)


def test_ultra_rapid_acts_faster():
    assert InsulinCurves.exponential_iob(60, 55, 300) < InsulinCurves.exponential_iob(60, 75, 300)


def test_bilinear_scales_with_dia():
    assert InsulinCurves.bilinear_iob(0, 3) == 1.0
    assert InsulinCurves.bilinear_iob(180, 3) == 0.0
    assert InsulinCurves.bilinear_iob(180, 6) > 0.0
    assert InsulinCurves.bilinear_iob(90, 3) == pytest.approx(InsulinCurves.bilinear_iob(180, 6))


def test_bilinear_activity_peak():
    assert InsulinCurves.bilinear_activity(75, 3) == pytest.approx(2.0 / 180)
    assert InsulinCurves.bilinear_activity(0, 3) == 0.0
    assert InsulinCurves.bilinear_activity(180, 3) == 0.0


def test_get_iob_dispatches_on_model():
    assert InsulinCurves.get_iob(60, 5, 75, "bilinear") == InsulinCurves.bilinear_iob(60, 5)
    assert InsulinCurves.get_iob(60, 5, 75, "exponential") == InsulinCurves.exponential_iob(60, 75, 300)


def test_linear_carb_absorption():
    assert CarbCurves.linear_absorption(0, 180) == pytest.approx(1 / 180)
    assert CarbCurves.linear_absorption(180, 180) == 0.0
    assert CarbCurves.linear_absorption(-5, 180) == 0.0
