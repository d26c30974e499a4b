"""Reminder kiosk core: schedule resolution, presentation state and live sync."""

DEFAULT_KIOSK_ID = "default"
DEFAULT_SETTINGS_ID = "default"
