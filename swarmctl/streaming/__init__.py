"""HTTP streaming endpoint."""

from __future__ import annotations

from swarmctl.streaming.server import StreamServer, build_stream_url

__all__ = ["StreamServer", "build_stream_url"]
