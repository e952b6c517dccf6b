"""Bucket naming for language ecosystems."""

SEPARATOR = "::"


def name(ecosystem: str, data_source: str) -> str:
    """Bucket name such as ``rubygems::Ruby Advisory Database``."""
    return f"{ecosystem}{SEPARATOR}{data_source}"