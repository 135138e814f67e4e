"""Torrent descriptor decoding.

Turns bencoded ``.torrent`` bytes (or a bare ``info`` dictionary, which is
what the engine hands back after a magnet metadata fetch) into an immutable
:class:`TorrentMetaInfo`.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any

import bencodepy

from swarmctl.utils.exceptions import DecodeError


@dataclass(frozen=True)
class FileEntry:
    """A single file inside a torrent."""

    index: int
    path: str
    size: int


@dataclass(frozen=True)
class TorrentMetaInfo:
    """Resolved torrent metadata."""

    info_hash: str
    name: str
    piece_length: int
    num_pieces: int
    total_size: int
    files: tuple[FileEntry, ...]
    trackers: tuple[str, ...] = ()
    comment: str = ""
    created_by: str = ""
    creation_date: int = 0
    private: bool = False
    raw: bytes = field(default=b"", repr=False, compare=False)

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def is_multi_file(self) -> bool:
        return len(self.files) > 1


def _text(value: Any, default: str = "") -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if value is None:
        return default
    return str(value)


def _trackers(torrent: dict[bytes, Any]) -> tuple[str, ...]:
    urls: list[str] = []
    announce = torrent.get(b"announce")
    if announce:
        urls.append(_text(announce))
    for tier in torrent.get(b"announce-list", []) or []:
        for url in tier:
            text = _text(url)
            if text and text not in urls:
                urls.append(text)
    return tuple(urls)


def _files(info: dict[bytes, Any], name: str) -> tuple[FileEntry, ...]:
    if b"files" not in info:
        return (FileEntry(0, name, int(info[b"length"])),)
    entries = []
    for index, entry in enumerate(info[b"files"]):
        parts = [_text(p) for p in entry[b"path"]]
        entries.append(FileEntry(index, "/".join([name, *parts]), int(entry[b"length"])))
    return tuple(entries)


def decode_metainfo(data: bytes) -> TorrentMetaInfo:
    """Decode descriptor bytes into :class:`TorrentMetaInfo`.

    Raises:
        DecodeError: ``data`` is empty, not valid bencode, or lacks the
            fields every torrent must carry.

    """
    if not data:
        msg = "Empty torrent descriptor"
        raise DecodeError(msg)

    try:
        decoded = bencodepy.decode(data)
    except Exception as e:
        msg = f"Invalid bencoded data: {e}"
        raise DecodeError(msg) from e

    if not isinstance(decoded, dict):
        msg = "Torrent descriptor is not a dictionary"
        raise DecodeError(msg)

    torrent: dict[bytes, Any] = decoded if b"info" in decoded else {b"info": decoded}
    info = torrent[b"info"]
    if not isinstance(info, dict):
        msg = "Torrent 'info' is not a dictionary"
        raise DecodeError(msg)

    try:
        name = _text(info[b"name"])
        piece_length = int(info[b"piece length"])
        pieces = info[b"pieces"]
        files = _files(info, name)
        trackers = _trackers(torrent)
        creation_date = int(torrent.get(b"creation date", 0) or 0)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        msg = f"Torrent info dictionary is incomplete: {e}"
        raise DecodeError(msg) from e

    if not isinstance(pieces, bytes):
        msg = "Torrent 'pieces' is not a byte string"
        raise DecodeError(msg, {"pieces": type(pieces).__name__})
    if piece_length <= 0 or len(pieces) % 20:
        msg = "Torrent piece layout is inconsistent"
        raise DecodeError(msg, {"piece_length": piece_length, "pieces": len(pieces)})

    return TorrentMetaInfo(
        info_hash=hashlib.sha1(bencodepy.encode(info)).hexdigest(),  # nosec B324
        name=name,
        piece_length=piece_length,
        num_pieces=len(pieces) // 20,
        total_size=sum(f.size for f in files),
        files=files,
        trackers=trackers,
        comment=_text(torrent.get(b"comment")),
        created_by=_text(torrent.get(b"created by")),
        creation_date=creation_date,
        private=bool(info.get(b"private", 0)),
        raw=bytes(data),
    )
