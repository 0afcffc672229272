"""Exceptions raised while reading and parsing dump files."""

from __future__ import annotations


class MalformedAddress(ValueError):
    """Address token that is not `ip:port`, `ip.port`, `ip:*` or `:::port`."""


class MalformedConnectionLine(ValueError):
    """Connection table line that cannot be turned into a ConnectionRecord."""


class UnreadableFile(OSError):
    """Dump or mapper file that cannot be opened or read."""
