"""cellarsync: bidirectional calendar sync between a booking platform and external calendars."""

__version__ = "0.1.0"
