"""Minimal ISO-BMFF (MP4) box scan: signature, brand, faststart."""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import List, Optional

# Top-level boxes we expect in a well-formed file
_KNOWN_BOXES = {b"ftyp", b"moov", b"mdat", b"free", b"skip", b"wide", b"uuid", b"moof", b"mfra", b"sidx", b"meta", b"pdin", b"styp"}


@dataclass
class ContainerInspection:
    has_ftyp: bool
    brand: Optional[str] = None
    boxes: List[str] = field(default_factory=list)
    moov_before_mdat: bool = False
    has_moov: bool = False
    has_mdat: bool = False
    size: int = 0

    @property
    def is_mp4(self) -> bool:
        return self.has_ftyp

    @property
    def faststart(self) -> bool:
        return self.has_moov and self.moov_before_mdat


def has_mp4_signature(data: bytes) -> bool:
    """`ftyp` at offset 4 is the container signature."""
    return len(data) >= 8 and data[4:8] == b"ftyp"


def inspect_container(data: bytes) -> ContainerInspection:
    result = ContainerInspection(has_ftyp=has_mp4_signature(data), size=len(data))
    if not result.has_ftyp:
        return result

    result.brand = data[8:12].decode("ascii", errors="replace") if len(data) >= 12 else None

    offset = 0
    total = len(data)
    while offset + 8 <= total:
        size, = struct.unpack(">I", data[offset:offset + 4])
        box_type = data[offset + 4:offset + 8]
        header = 8
        if size == 1:
            if offset + 16 > total:
                break
            size, = struct.unpack(">Q", data[offset + 8:offset + 16])
            header = 16
        elif size == 0:
            size = total - offset

        if box_type not in _KNOWN_BOXES or size < header:
            break

        name = box_type.decode("ascii")
        result.boxes.append(name)
        if name == "moov":
            result.has_moov = True
            if not result.has_mdat:
                result.moov_before_mdat = True
        elif name == "mdat":
            result.has_mdat = True

        offset += size
    return result
