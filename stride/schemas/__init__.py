"""Pydantic schemas for API payloads and realtime wire messages."""
