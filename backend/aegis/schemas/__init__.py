"""Pydantic request/response schemas shared across routes."""
