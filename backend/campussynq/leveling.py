"""XP thresholds and level derivation.

One step function is used everywhere: reaching level ``L + 1`` requires
``xp_per_level * L`` cumulative XP, so a profile sits at the smallest level
``L`` with ``xp < threshold(L)``.
"""
from __future__ import annotations
from typing import Dict, Optional
from .settings import settings


def _step(step: Optional[int]) -> int:
	value = step if step is not None else settings.xp_per_level
	if value <= 0:
		raise ValueError("xp_per_level must be positive")
	return value


def threshold(level: int, step: Optional[int] = None) -> int:
	return _step(step) * level


def level_for_xp(xp: int, step: Optional[int] = None) -> int:
	return max(0, xp) // _step(step) + 1


def next_level(xp: int, current_level: int, step: Optional[int] = None) -> int:
	"""Walk up from ``current_level`` until ``xp`` is below the level's threshold.

	The level never goes down here; a consistent starting level yields
	``level_for_xp(xp)``.
	"""
	level = max(1, current_level)
	while xp >= threshold(level, step):
		level += 1
	return level


def xp_to_next_level(xp: int, level: int, step: Optional[int] = None) -> int:
	return max(0, threshold(level, step) - xp)


def progress_to_next_level(xp: int, level: int, step: Optional[int] = None) -> float:
	floor = threshold(level - 1, step)
	ceiling = threshold(level, step)
	pct = (xp - floor) / (ceiling - floor) * 100
	return round(min(100.0, max(0.0, pct)), 2)


# XP amounts for common actions
XP_ACTIONS: Dict[str, int] = {
	"COLLEGE_VIEW": 10,
	"SCHOLARSHIP_APPLICATION": 50,
	"EVENT_RSVP": 25,
	"BLOG_READ": 15,
	"COMMUNITY_POST": 30,
	"MENTOR_SESSION": 100,
	"PROFILE_COMPLETE": 75,
	"DAILY_LOGIN": 5,
	"TASK_COMPLETE": 20,
	"FEATURE_FAVORITE": 5,
}
