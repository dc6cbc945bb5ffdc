"""Pydantic schemas shared by services, the change feed and the API."""
