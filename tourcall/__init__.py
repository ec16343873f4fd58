"""One-to-one voice calls between portal users in a chat room."""

__version__ = "0.1.0"
