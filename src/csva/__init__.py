"""csva - customer-service voice agent."""

__version__ = "0.1.0"
