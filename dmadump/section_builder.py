"""Accumulates the contents of a new section appended to an image."""

from __future__ import annotations

from dmadump.utils import align


class SectionBuilder:
    """Collects section bytes together with their placement and flags."""

    def __init__(
        self,
        offset: int,
        rva: int,
        section_alignment: int,
        file_alignment: int,
    ) -> None:
        self.offset = offset
        self.rva = rva
        self.section_alignment = section_alignment
        self.file_alignment = file_alignment
        self.characteristics = 0
        self.data = bytearray()

    def __repr__(self) -> str:
        return (
            f"SectionBuilder(offset={self.offset:#x}, rva={self.rva:#x}, "
            f"raw_size={self.raw_size:#x})"
        )

    @property
    def raw_size(self) -> int:
        """Number of bytes written so far."""
        return len(self.data)

    @property
    def virtual_size(self) -> int:
        """Raw size rounded up to the section alignment."""
        return align(len(self.data), self.section_alignment)

    @property
    def file_size(self) -> int:
        """Raw size rounded up to the file alignment."""
        return align(len(self.data), self.file_alignment)

    def finalize(self) -> None:
        """Pad the data with zeros up to the file alignment."""
        size = self.file_size
        if len(self.data) < size:
            self.data.extend(bytes(size - len(self.data)))
        else:
            del self.data[size:]

    def append(self, data) -> None:
        """Append a bytes-like object to the section."""
        self.data += bytes(data)

    def add_characteristics(self, flags: int) -> None:
        """Set the given section characteristic flags."""
        self.characteristics |= flags