"""Class ranking, percentile standing and their display strings."""

import math
import re

# Leading integer, the way form inputs and legacy rows carry positions.
_LEADING_INT = re.compile(r'^\s*[+-]?\d+')

# Averages closer than this share a position.
SCORE_TOLERANCE = 1e-9


def coerce_rank_value(value):
    """Coerce a position/size to a number; None for null, 'N/A' or non-numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        if value.strip().upper() == 'N/A':
            return None
        match = _LEADING_INT.match(value)
        return int(match.group()) if match else None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    return None


def has_valid_ranking(position, total):
    return coerce_rank_value(position) is not None and coerce_rank_value(total) is not None


def calculate_percentile(position, total):
    """Rank-derived standing: 100 for first place, approaching 0 for last.

    Not rounded; display rounding lives in format_percentile.
    """
    position = coerce_rank_value(position)
    total = coerce_rank_value(total)
    if position is None or total is None or total == 0:
        return None
    return ((total - position + 1) / total) * 100


def ordinal(value):
    """Return ordinal string for an integer (e.g., 1 -> 1st)."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return str(value)
    abs_n = abs(n)
    if 10 <= (abs_n % 100) <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(abs_n % 10, 'th')
    return f"{n}{suffix}"


def _round_half_up(value):
    return int(math.floor(value + 0.5))


def format_percentile(percentile):
    """'Top 5%' at 90 and above, otherwise e.g. '36th percentile'."""
    if percentile is None:
        return 'N/A'
    try:
        p = float(percentile)
    except (TypeError, ValueError):
        return 'N/A'
    if not math.isfinite(p):
        return 'N/A'
    if p >= 90:
        return f"Top {math.ceil(100 - p)}%"
    return f"{ordinal(_round_half_up(p))} percentile"


def format_position(position, total):
    """'3rd of 45', or 'N/A' when either side is missing."""
    if not has_valid_ranking(position, total):
        return 'N/A'
    return f"{ordinal(coerce_rank_value(position))} of {coerce_rank_value(total)}"


def rank_by_average(averages):
    """Competition ranking over {student_id: average}.

    Students with a None average are not ranked. Equal averages share the
    position, and the next distinct average skips ahead (1, 2, 2, 4), so a
    position is always 1 + the number of students strictly higher.
    """
    ranked = sorted(
        ((float(avg), sid) for sid, avg in averages.items() if avg is not None),
        key=lambda pair: (-pair[0], str(pair[1])),
    )
    positions = {}
    current_pos = 0
    leader = None
    for index, (score, sid) in enumerate(ranked, 1):
        if leader is None or abs(score - leader) > SCORE_TOLERANCE:
            current_pos = index
            leader = score
        positions[sid] = current_pos
    return positions
