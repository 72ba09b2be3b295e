"""
Subject preference sources.

A preference source answers "which model does this subject prefer?". The
service treats lookup failures as "no preference".
"""

from abc import ABC, abstractmethod


class PreferenceSource(ABC):
    """Read-only lookup of a subject's preferred model."""

    @abstractmethod
    async def preferred_model(self, subject_id: str) -> str | None:
        """Return the preferred model id, or None."""


class NoPreferenceSource(PreferenceSource):
    async def preferred_model(self, subject_id: str) -> str | None:
        return None


class StaticPreferenceSource(PreferenceSource):
    """Preferences held in a mapping of subject id to model id."""

    def __init__(self, preferences: dict[str, str] | None = None):
        self._preferences = dict(preferences or {})

    async def preferred_model(self, subject_id: str) -> str | None:
        return self._preferences.get(subject_id)

    def set_preference(self, subject_id: str, model_id: str | None) -> None:
        if model_id is None:
            self._preferences.pop(subject_id, None)
        else:
            self._preferences[subject_id] = model_id
