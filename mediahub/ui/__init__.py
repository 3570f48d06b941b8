"""Terminal views over the media catalogue."""
