"""JSON document storage and the session repository built on it."""
