"""Remote-control command relay and vehicle agent."""

__version__ = "0.1.0"
