"""Google Calendar sync core for time-block planning."""

__version__ = "0.1.0"
