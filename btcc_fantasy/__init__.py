"""BTCC Fantasy: roster selection engine and API service."""

__version__ = "1.0.0"
