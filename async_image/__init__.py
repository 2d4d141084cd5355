"""Asynchronous image loading with owning-thread texture delivery."""

__version__ = "0.1.0"
