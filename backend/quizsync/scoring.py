from .utils import js_round


DEFAULT_BASE_POINTS = 1000


def calculate_score(
    is_correct: bool,
    response_latency_ms: float,
    time_limit_ms: float,
    base_points: int = DEFAULT_BASE_POINTS,
) -> int:
    """Points for one answer: half the base for being right, up to half again for speed.

    Answers arriving after the time limit still earn the half-base floor; callers
    that want late answers to score nothing must check lateness first.
    """
    if not is_correct:
        return 0
    if time_limit_ms <= 0:
        return base_points

    latency = max(0.0, float(response_latency_ms))
    time_ratio = max(0.0, min(1.0, 1 - latency / time_limit_ms))
    speed_bonus = js_round(time_ratio * base_points * 0.5)
    return min(base_points, js_round(base_points * 0.5) + speed_bonus)
