import math


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (Python's round() is banker's rounding)."""
    return math.floor(value + 0.5)
