"""Integration test matrix engine for the EventStoreDB client."""

__version__ = "0.1.0"
