"""HTTP surface for calendar sync."""
