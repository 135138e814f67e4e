"""Core decision and parsing logic.

- Magnet URI parsing
- Torrent descriptor decoding
- Power/network policy evaluation
"""

from __future__ import annotations
