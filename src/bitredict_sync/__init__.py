"""Bitredict chain-to-database event ingestion and broadcast pipeline."""

__version__ = "0.1.0"
