"""User settings module."""

from secretary.services.settings.user_settings import UserSettingsService

__all__ = ["UserSettingsService"]
