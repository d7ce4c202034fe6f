"""Prompt storage service with throttled bulk deletion."""
