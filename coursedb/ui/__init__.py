"""Terminal views over the catalogue."""
