"""External calendar provider adapters.

Each adapter implements ``cellarsync.providers.base.CalendarProvider``:
- ``caldav``: basic-auth CalDAV (Orange-style servers)
- ``microsoft``: Microsoft Graph over OAuth2
- ``google``: Google Calendar over OAuth2
"""

__all__ = ["base", "caldav", "google", "microsoft"]
