"""Persistent chat threads with streamed assistant replies."""

__version__ = "0.1.0"
