"""Privileged log gateway: serves allow-listed logs to one trusted client."""

__version__ = "0.3.0"
