"""Collect security advisories into a nested key/value database and read them back."""

__version__ = "0.1.0"