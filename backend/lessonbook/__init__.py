"""Lesson scheduling core: availability, booking validation and calendar sync."""
