"""Availability and appointment scheduling engine for voice agents."""
