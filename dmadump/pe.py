"""Read and write views over the PE32+ structures held in a memory image."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, Optional

IMAGE_SIZEOF_SHORT_NAME = 8
IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16

IMAGE_SCN_TYPE_NO_PAD = 0x00000008
IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_LNK_OTHER = 0x00000100
IMAGE_SCN_LNK_INFO = 0x00000200
IMAGE_SCN_LNK_REMOVE = 0x00000800
IMAGE_SCN_LNK_COMDAT = 0x00001000
IMAGE_SCN_NO_DEFER_SPEC_EXC = 0x00004000
IMAGE_SCN_GPREL = 0x00008000
IMAGE_SCN_MEM_FARDATA = 0x00008000
IMAGE_SCN_MEM_PURGEABLE = 0x00020000
IMAGE_SCN_MEM_16BIT = 0x00020000
IMAGE_SCN_MEM_LOCKED = 0x00040000
IMAGE_SCN_MEM_PRELOAD = 0x00080000
IMAGE_SCN_ALIGN_MASK = 0x00F00000
IMAGE_SCN_LNK_NRELOC_OVFL = 0x01000000
IMAGE_SCN_MEM_DISCARDABLE = 0x02000000
IMAGE_SCN_MEM_NOT_CACHED = 0x04000000
IMAGE_SCN_MEM_NOT_PAGED = 0x08000000
IMAGE_SCN_MEM_SHARED = 0x10000000
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

IMAGE_DIRECTORY_ENTRY_EXPORT = 0
IMAGE_DIRECTORY_ENTRY_IMPORT = 1
IMAGE_DIRECTORY_ENTRY_RESOURCE = 2
IMAGE_DIRECTORY_ENTRY_EXCEPTION = 3
IMAGE_DIRECTORY_ENTRY_SECURITY = 4
IMAGE_DIRECTORY_ENTRY_BASERELOC = 5
IMAGE_DIRECTORY_ENTRY_DEBUG = 6
IMAGE_DIRECTORY_ENTRY_ARCHITECTURE = 7
IMAGE_DIRECTORY_ENTRY_GLOBALPTR = 8
IMAGE_DIRECTORY_ENTRY_TLS = 9
IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG = 10
IMAGE_DIRECTORY_ENTRY_BOUND_IMPORT = 11
IMAGE_DIRECTORY_ENTRY_IAT = 12
IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT = 13
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = 14

IMAGE_ORDINAL_FLAG64 = 0x8000000000000000
IMAGE_ORDINAL_FLAG32 = 0x80000000

DOS_LFANEW_OFFSET = 0x3C
FILE_HEADER_SIZE = 20
DATA_DIRECTORY_SIZE = 8
OPTIONAL_HEADER64_SIZE = 240
SECTION_HEADER_SIZE = 40
IMPORT_DESCRIPTOR_SIZE = 20
THUNK_SIZE = 8
EXPORT_DIRECTORY_SIZE = 40


class _Field:
    """A little-endian scalar stored at a fixed offset inside a view."""

    def __init__(self, fmt: str, offset: int) -> None:
        self._struct = struct.Struct("<" + fmt)
        self._offset = offset

    def __get__(self, view, owner=None):
        if view is None:
            return self
        return self._struct.unpack_from(view.buffer, view.offset + self._offset)[0]

    def __set__(self, view, value) -> None:
        self._struct.pack_into(view.buffer, view.offset + self._offset, value)


class _View:
    """Base for structures that read and write straight through to a buffer."""

    SIZE = 0

    def __init__(self, buffer: bytearray, offset: int) -> None:
        if offset < 0 or offset + self.SIZE > len(buffer):
            raise ValueError(
                f"{type(self).__name__} at offset {offset:#x} lies outside the image"
            )
        self.buffer = buffer
        self.offset = offset

    def __repr__(self) -> str:
        return f"{type(self).__name__}(offset={self.offset:#x})"


class DataDirectory(_View):
    """An entry of the optional header's data directory table."""

    SIZE = DATA_DIRECTORY_SIZE

    virtual_address = _Field("I", 0)
    size = _Field("I", 4)

    def contains(self, rva: int) -> bool:
        """Whether the directory is present and spans ``rva``."""
        start = self.virtual_address
        size = self.size
        return bool(start) and bool(size) and start <= rva < start + size


class SectionHeader(_View):
    """A section table entry."""

    SIZE = SECTION_HEADER_SIZE

    name = _Field("8s", 0)
    virtual_size = _Field("I", 8)
    virtual_address = _Field("I", 12)
    size_of_raw_data = _Field("I", 16)
    pointer_to_raw_data = _Field("I", 20)
    pointer_to_relocations = _Field("I", 24)
    pointer_to_linenumbers = _Field("I", 28)
    number_of_relocations = _Field("H", 32)
    number_of_linenumbers = _Field("H", 34)
    characteristics = _Field("I", 36)


class _Directory:
    """Accessor for one fixed slot of the data directory table."""

    def __init__(self, index: int) -> None:
        self._index = index

    def __get__(self, header, owner=None):
        if header is None:
            return self
        return header.data_directories[self._index]


class OptionalHeader64(_View):
    """The PE32+ optional header."""

    SIZE = OPTIONAL_HEADER64_SIZE

    magic = _Field("H", 0)
    major_linker_version = _Field("B", 2)
    minor_linker_version = _Field("B", 3)
    size_of_code = _Field("I", 4)
    size_of_initialized_data = _Field("I", 8)
    size_of_uninitialized_data = _Field("I", 12)
    address_of_entry_point = _Field("I", 16)
    base_of_code = _Field("I", 20)
    image_base = _Field("Q", 24)
    section_alignment = _Field("I", 32)
    file_alignment = _Field("I", 36)
    major_operating_system_version = _Field("H", 40)
    minor_operating_system_version = _Field("H", 42)
    major_image_version = _Field("H", 44)
    minor_image_version = _Field("H", 46)
    major_subsystem_version = _Field("H", 48)
    minor_subsystem_version = _Field("H", 50)
    win32_version_value = _Field("I", 52)
    size_of_image = _Field("I", 56)
    size_of_headers = _Field("I", 60)
    checksum = _Field("I", 64)
    subsystem = _Field("H", 68)
    dll_characteristics = _Field("H", 70)
    size_of_stack_reserve = _Field("Q", 72)
    size_of_stack_commit = _Field("Q", 80)
    size_of_heap_reserve = _Field("Q", 88)
    size_of_heap_commit = _Field("Q", 96)
    loader_flags = _Field("I", 104)
    number_of_rva_and_sizes = _Field("I", 108)

    _DATA_DIRECTORY_OFFSET = 112

    @property
    def data_directories(self) -> tuple[DataDirectory, ...]:
        base = self.offset + self._DATA_DIRECTORY_OFFSET
        return tuple(
            DataDirectory(self.buffer, base + DATA_DIRECTORY_SIZE * index)
            for index in range(IMAGE_NUMBEROF_DIRECTORY_ENTRIES)
        )

    export_directory = _Directory(IMAGE_DIRECTORY_ENTRY_EXPORT)
    import_directory = _Directory(IMAGE_DIRECTORY_ENTRY_IMPORT)
    resource_directory = _Directory(IMAGE_DIRECTORY_ENTRY_RESOURCE)
    exception_directory = _Directory(IMAGE_DIRECTORY_ENTRY_EXCEPTION)
    security_directory = _Directory(IMAGE_DIRECTORY_ENTRY_SECURITY)
    base_reloc_directory = _Directory(IMAGE_DIRECTORY_ENTRY_BASERELOC)
    debug_directory = _Directory(IMAGE_DIRECTORY_ENTRY_DEBUG)
    tls_directory = _Directory(IMAGE_DIRECTORY_ENTRY_TLS)
    load_config_directory = _Directory(IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG)
    bound_import_directory = _Directory(IMAGE_DIRECTORY_ENTRY_BOUND_IMPORT)
    iat_directory = _Directory(IMAGE_DIRECTORY_ENTRY_IAT)
    delay_import_directory = _Directory(IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT)
    com_descriptor_directory = _Directory(IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR)


class NtHeaders(_View):
    """The NT headers: signature, file header and 64-bit optional header."""

    SIZE = 4 + FILE_HEADER_SIZE + OPTIONAL_HEADER64_SIZE

    signature = _Field("I", 0)
    machine = _Field("H", 4)
    number_of_sections = _Field("H", 6)
    time_date_stamp = _Field("I", 8)
    pointer_to_symbol_table = _Field("I", 12)
    number_of_symbols = _Field("I", 16)
    size_of_optional_header = _Field("H", 20)
    characteristics = _Field("H", 22)

    @property
    def optional_header(self) -> OptionalHeader64:
        return OptionalHeader64(self.buffer, self.offset + 4 + FILE_HEADER_SIZE)

    def section_header(self, index: int) -> SectionHeader:
        """The section table entry at ``index``; it need not be in use yet."""
        table = self.offset + 4 + FILE_HEADER_SIZE + self.size_of_optional_header
        return SectionHeader(self.buffer, table + SECTION_HEADER_SIZE * index)

    def sections(self) -> Iterator[SectionHeader]:
        """Yield every section header in use."""
        for index in range(self.number_of_sections):
            yield self.section_header(index)

    def file_offset_to_rva(self, file_offset: int) -> Optional[int]:
        """Map a file offset to an RVA through the section table."""
        for section in self.sections():
            delta = file_offset - section.pointer_to_raw_data
            if 0 <= delta < section.size_of_raw_data:
                return section.virtual_address + delta
        return None

    def rva_to_file_offset(self, rva: int) -> Optional[int]:
        """Map an RVA to a file offset through the section table."""
        for section in self.sections():
            delta = rva - section.virtual_address
            if 0 <= delta < section.size_of_raw_data:
                return section.pointer_to_raw_data + delta
        return None

    def section_end_va(self) -> int:
        """The highest end address of any section, or 0 without sections."""
        return max(
            (section.virtual_address + section.virtual_size for section in self.sections()),
            default=0,
        )


class ImportDescriptor(_View):
    """An entry of the import directory."""

    SIZE = IMPORT_DESCRIPTOR_SIZE

    original_first_thunk = _Field("I", 0)
    characteristics = _Field("I", 0)
    time_date_stamp = _Field("I", 4)
    forwarder_chain = _Field("I", 8)
    name = _Field("I", 12)
    first_thunk = _Field("I", 16)


@dataclass(frozen=True)
class ExportDirectory:
    """The export directory table."""

    characteristics: int = 0
    time_date_stamp: int = 0
    major_version: int = 0
    minor_version: int = 0
    name: int = 0
    base: int = 0
    number_of_functions: int = 0
    number_of_names: int = 0
    address_of_functions: int = 0
    address_of_names: int = 0
    address_of_name_ordinals: int = 0

    _FORMAT = struct.Struct("<IIHHIIIIIII")

    @classmethod
    def unpack(cls, data: bytes) -> "ExportDirectory":
        if len(data) < EXPORT_DIRECTORY_SIZE:
            raise ValueError("export directory data is truncated")
        return cls(*cls._FORMAT.unpack_from(data, 0))


@dataclass
class ImportDirLayout:
    """Offsets of the parts of a rebuilt import directory."""

    size: int = 0
    descriptor_offset: int = 0
    first_thunk_offset: int = 0
    original_first_thunk_offset: int = 0
    library_name_offset: int = 0
    function_name_offset: int = 0


def get_nt_headers(image: bytearray) -> NtHeaders:
    """The NT headers the DOS header of ``image`` points at."""
    if len(image) < DOS_LFANEW_OFFSET + 4:
        raise ValueError("image is too small to hold a DOS header")
    (lfanew,) = struct.unpack_from("<i", image, DOS_LFANEW_OFFSET)
    return NtHeaders(image, lfanew)


def get_optional_header64(image: bytearray) -> OptionalHeader64:
    """The 64-bit optional header of ``image``."""
    return get_nt_headers(image).optional_header


def iter_import_descriptors(image: bytearray, offset: int) -> Iterator[ImportDescriptor]:
    """Yield import descriptors from ``offset`` up to the one with no name."""
    while True:
        descriptor = ImportDescriptor(image, offset)
        if descriptor.name == 0:
            return
        yield descriptor
        offset += IMPORT_DESCRIPTOR_SIZE


def read_c_string(image: bytes, offset: int) -> str:
    """The NUL-terminated string at ``offset``, or up to the end of the image."""
    if offset < 0 or offset > len(image):
        raise ValueError(f"string offset {offset:#x} lies outside the image")
    end = image.find(b"\0", offset)
    if end < 0:
        end = len(image)
    return bytes(image[offset:end]).decode("latin-1")


def snap_by_ordinal(value: int) -> bool:
    """Whether a 64-bit thunk imports by ordinal."""
    return (value & IMAGE_ORDINAL_FLAG64) != 0


def ordinal_of(value: int) -> int:
    """The ordinal carried in a thunk value."""
    return value & 0xFFFF