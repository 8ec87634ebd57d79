"""Decoders for Linux RAS hardware error trace events, and CPU fault isolation."""

__version__ = "0.1.0"