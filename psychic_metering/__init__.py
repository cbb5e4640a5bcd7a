"""Psychic chat metering service."""
