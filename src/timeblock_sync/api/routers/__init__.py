"""HTTP routers for the calendar sync API."""
