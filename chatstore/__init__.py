"""Persistence and query engine for WhatsApp chat history."""

__version__ = "1.0.0"
