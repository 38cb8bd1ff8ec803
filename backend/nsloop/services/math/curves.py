import math


class InsulinCurves:
    """
    oref0 insulin action models.

    Activity is the fraction of a unit acting per minute, IOB is the fraction
    of the unit still remaining. Both are zero at or after the end of action.
    """

    BILINEAR_PEAK_MIN = 75.0
    BILINEAR_END_MIN = 180.0

    @staticmethod
    def _exponential_params(peak_min: float, end_min: float) -> tuple[float, float, float]:
        tau = peak_min * (1 - peak_min / end_min) / (1 - 2 * peak_min / end_min)
        a = 2 * tau / end_min
        S = 1 / (1 - a + (1 + a) * math.exp(-end_min / tau))
        return tau, a, S

    @staticmethod
    def exponential_activity(t_min: float, peak_min: float, end_min: float) -> float:
        if t_min <= 0 or t_min >= end_min:
            return 0.0
        tau, _, S = InsulinCurves._exponential_params(peak_min, end_min)
        return (S / tau**2) * t_min * (1 - t_min / end_min) * math.exp(-t_min / tau)

    @staticmethod
    def exponential_iob(t_min: float, peak_min: float, end_min: float) -> float:
        if t_min <= 0:
            return 1.0
        if t_min >= end_min:
            return 0.0
        tau, a, S = InsulinCurves._exponential_params(peak_min, end_min)
        inner = (t_min**2 / (tau * end_min * (1 - a)) - t_min / tau - 1) * math.exp(-t_min / tau) + 1
        return max(0.0, 1 - S * (1 - a) * inner)

    @staticmethod
    def bilinear_activity(t_min: float, dia_hours: float) -> float:
        # The shape is defined for a 3h DIA and stretched to the real one
        scaled = t_min * 3.0 / dia_hours
        peak = InsulinCurves.BILINEAR_PEAK_MIN
        end = InsulinCurves.BILINEAR_END_MIN
        if scaled <= 0 or scaled >= end:
            return 0.0
        activity_peak = 2.0 / (dia_hours * 60)
        if scaled < peak:
            return activity_peak / peak * scaled
        return activity_peak - activity_peak / (end - peak) * (scaled - peak)

    @staticmethod
    def bilinear_iob(t_min: float, dia_hours: float) -> float:
        scaled = t_min * 3.0 / dia_hours
        peak = InsulinCurves.BILINEAR_PEAK_MIN
        end = InsulinCurves.BILINEAR_END_MIN
        if scaled <= 0:
            return 1.0
        if scaled >= end:
            return 0.0
        if scaled < peak:
            x1 = scaled / 5 + 1
            return -0.001852 * x1 * x1 + 0.001852 * x1 + 1.0
        x2 = (scaled - peak) / 5
        return max(0.0, 0.001323 * x2 * x2 - 0.054233 * x2 + 0.555560)

    @staticmethod
    def get_iob(t_min: float, dia_hours: float, peak_min: float, model_type: str) -> float:
        if model_type == "bilinear":
            return InsulinCurves.bilinear_iob(t_min, dia_hours)
        return InsulinCurves.exponential_iob(t_min, peak_min, dia_hours * 60)

    @staticmethod
    def get_activity(t_min: float, dia_hours: float, peak_min: float, model_type: str) -> float:
        if model_type == "bilinear":
            return InsulinCurves.bilinear_activity(t_min, dia_hours)
        return InsulinCurves.exponential_activity(t_min, peak_min, dia_hours * 60)


class CarbCurves:
    @staticmethod
    def linear_absorption(t_min: float, duration_min: float) -> float:
        """Fraction of the remaining carbs absorbed per minute."""
        if t_min < 0 or t_min >= duration_min:
            return 0.0
        return 1.0 / duration_min
