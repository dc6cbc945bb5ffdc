"""CareLink — guardian / blind-user connection service."""

__version__ = "0.1.0"
