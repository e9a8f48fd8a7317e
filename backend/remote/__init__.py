"""Client for the remote flow server's REST and stream API."""

from remote.client import ByteStream, StudioClient

__all__ = ["ByteStream", "StudioClient"]
