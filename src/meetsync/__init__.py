"""Two-way synchronization between a local meeting store and Google Calendar."""

__version__ = "2.0.0"
