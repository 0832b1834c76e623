"""Song Studio HTTP API."""
