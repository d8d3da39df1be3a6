"""Xylkit indexer - incremental sync engine for the Xylkit protocol on Movement."""

__version__ = "0.1.0"
