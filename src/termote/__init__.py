"""termote: share a local terminal through a relay server."""

__version__ = "0.1.0"
