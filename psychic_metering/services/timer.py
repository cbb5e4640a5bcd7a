"""
Timer arithmetic for free-trial and paid windows.

Pure functions of timestamps and credit counts. All durations are whole
seconds, rounded down; a timestamp earlier than its reference counts as zero
elapsed time.
"""

import math
from datetime import datetime, timedelta

SECONDS_PER_MINUTE = 60


def elapsed_seconds(start: datetime, now: datetime) -> int:
    """Whole seconds from `start` to `now`, never negative."""
    return max(0, math.floor((now - start).total_seconds()))


def trial_window_end(start: datetime, trial_seconds: int) -> datetime:
    """End of a free trial window opened at `start`."""
    return start + timedelta(seconds=trial_seconds)


def is_trial_active(trial_ends_at: datetime, now: datetime) -> bool:
    """True while `now` is strictly before the end of the trial window."""
    return now < trial_ends_at


def trial_remaining_seconds(trial_ends_at: datetime, now: datetime) -> int:
    """Seconds left in the trial window, floored and clamped at zero."""
    return max(0, math.floor((trial_ends_at - now).total_seconds()))


def paid_remaining_seconds(initial_credits: int, paid_started_at: datetime, now: datetime) -> int:
    """
    Seconds left in a paid window funded with `initial_credits` minutes.

    Non-increasing in `now` and exactly zero from
    `paid_started_at + initial_credits * 60` on.
    """
    total = initial_credits * SECONDS_PER_MINUTE
    return max(0, total - elapsed_seconds(paid_started_at, now))


def expected_credits(initial_credits: int, seconds_since_start: int) -> int:
    """Credits that should remain after the whole minutes already consumed (may be negative)."""
    return initial_credits - seconds_since_start // SECONDS_PER_MINUTE


def is_minute_boundary(seconds_since_start: int) -> bool:
    """True on the first second of every new minute of a paid window."""
    return seconds_since_start >= 1 and seconds_since_start % SECONDS_PER_MINUTE == 1


def boundary_charge(credits: int, initial_credits: int, seconds_since_start: int) -> int | None:
    """
    New wallet balance for the per-minute sweep charge, or None if nothing is due.

    The balance is corrected down to the expected credits rather than
    decremented, so running this twice within the same minute charges once.
    """
    if not is_minute_boundary(seconds_since_start):
        return None
    target = max(0, expected_credits(initial_credits, seconds_since_start))
    if credits <= target:
        return None
    return target


def settled_credits(initial_credits: int, seconds_since_start: int) -> int:
    """Balance owed when a paid window closes: every started minute is billed."""
    minutes_started = math.ceil(seconds_since_start / SECONDS_PER_MINUTE)
    return max(0, initial_credits - minutes_started)


def settlement_charge(credits: int, initial_credits: int, seconds_since_start: int) -> int | None:
    """New wallet balance when closing a paid window, or None if already settled."""
    target = settled_credits(initial_credits, seconds_since_start)
    if credits <= target:
        return None
    return target


def minutes_to_charge(last_charged_at: datetime, now: datetime) -> int:
    """Whole minutes elapsed since the last charge checkpoint."""
    return elapsed_seconds(last_charged_at, now) // SECONDS_PER_MINUTE


def advance_checkpoint(last_charged_at: datetime, minutes: int) -> datetime:
    """Move a charge checkpoint forward by whole minutes."""
    return last_charged_at + timedelta(minutes=minutes)
