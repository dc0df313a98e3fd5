"""Rotating copy: all-quiet digest lines and no-tracking reminder subjects."""

import random
from typing import Optional

ALL_QUIET_MESSAGES = [
    "Your software is suspiciously stable this week. We're keeping an eye on it.",
    "Nothing to report. Your apps are quietly doing their jobs.",
    "Zero updates. Either everything's perfect, or the calm before the storm.",
    "All quiet on the version front. Enjoy it while it lasts.",
    "No updates detected. Time to grab a coffee instead of reading release notes.",
    "Your tracked apps are taking a well-deserved break this week.",
    "The update fairy took the week off. Check back soon!",
    "Silence in the changelog. Your software is vibing.",
]


def pick_all_quiet_message(rng: Optional[random.Random] = None) -> str:
    """Pick one message at random (pass a seeded Random for repeatable output)."""
    return (rng or random).choice(ALL_QUIET_MESSAGES)


NO_TRACKING_SUBJECTS = [
    "We saved you a seat, but you forgot the software",
    "Your software tracker is feeling lonely",
    "Pop quiz: How many apps are you tracking? (Hint: it's zero)",
    "Your watchlist called. It wants some software to track",
    "Houston, we have zero software tracked",
]


def pick_reminder_subject(rng: Optional[random.Random] = None) -> str:
    """Subject line for a no-tracking reminder, picked per recipient."""
    return (rng or random).choice(NO_TRACKING_SUBJECTS)
