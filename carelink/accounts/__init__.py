"""Blind-user and guardian accounts."""
