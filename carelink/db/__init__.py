"""Database engine, sessions and units of work."""
