"""Pydantic schemas for the marketplace HTTP API."""
