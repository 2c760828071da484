"""calsync: keeps a local event store consistent with each user's Google Calendar."""

__version__ = "0.1.0"
