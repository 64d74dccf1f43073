"""Companion controller for turnie wireless displays."""

__version__ = "0.1.0"
