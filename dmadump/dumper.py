"""Base class for reading a target's memory and its modules' exports."""

from __future__ import annotations

import abc
import struct

from dmadump import pe
from dmadump.modules import ModuleExportInfo, ModuleInfo, ModuleList

PAGE_SIZE = 0x1000
_PAGE_MASK = ~(PAGE_SIZE - 1)
_STRING_CHUNK = 16
_EXPORT_NAME_MAX = 250


class MemoryReadError(Exception):
    """Raised when target memory cannot be read.

    ``data`` holds whatever was read before the failure.
    """

    def __init__(self, address: int, data: bytes = b"") -> None:
        super().__init__(f"failed to read memory at {address:#x}")
        self.address = address
        self.data = bytes(data)


class Dumper(abc.ABC):
    """Reads memory of a target with a page cache on top."""

    def __init__(self) -> None:
        self._memory_cache: dict[int, bytes] = {}

    @property
    @abc.abstractmethod
    def module_list(self) -> ModuleList:
        """The modules known for the target."""

    @abc.abstractmethod
    def load_module_info(self) -> None:
        """Fill the module list from the target."""

    @abc.abstractmethod
    def read_memory(self, va: int, size: int) -> bytes:
        """Read ``size`` bytes at ``va``; raise MemoryReadError on failure."""

    def read_memory_cached(self, va: int, size: int, force_update_cache: bool = False) -> bytes:
        """Read ``size`` bytes at ``va`` through the page cache."""
        if va == 0 or size == 0:
            raise MemoryReadError(va)

        start_page = va & _PAGE_MASK
        end_page = (va + size + PAGE_SIZE - 1) & _PAGE_MASK

        result = bytearray()
        for page in range(start_page, end_page, PAGE_SIZE):
            cached = None if force_update_cache else self._memory_cache.get(page)
            if cached is None:
                try:
                    fetched = self.read_memory(page, PAGE_SIZE)
                except MemoryReadError as exc:
                    raise MemoryReadError(page, result) from exc
                cached = bytes(fetched[:PAGE_SIZE]).ljust(PAGE_SIZE, b"\0")
                self._memory_cache[page] = cached

            start = max(va, page) - page
            count = min(PAGE_SIZE - start, size - len(result))
            result += cached[start : start + count]

        return bytes(result)

    def read_string(self, va: int, max_read: int, force_update_cache: bool = False) -> str:
        """Read a NUL-terminated string, in 16-byte steps, up to ``max_read``."""
        collected = bytearray()
        total = 0
        while total < max_read:
            try:
                chunk = self.read_memory_cached(va + total, _STRING_CHUNK, force_update_cache)
            except MemoryReadError as exc:
                chunk = exc.data
            if not chunk:
                if total == 0:
                    raise MemoryReadError(va)
                break
            nul = chunk.find(b"\0")
            if nul >= 0:
                collected += chunk[:nul]
                break
            collected += chunk
            total += len(chunk)
        return collected.decode("latin-1")

    def load_module_eat(self, module_info: ModuleInfo) -> None:
        """Add the named exports of ``module_info`` read from the target."""
        base = module_info.image_base
        header = bytearray(self.read_memory_cached(base, PAGE_SIZE))
        entry = pe.get_optional_header64(header).export_directory
        if entry.virtual_address == 0 or entry.size == 0:
            return

        directory = pe.ExportDirectory.unpack(
            self.read_memory_cached(base + entry.virtual_address, pe.EXPORT_DIRECTORY_SIZE)
        )
        functions = base + directory.address_of_functions
        names = base + directory.address_of_names
        ordinals = base + directory.address_of_name_ordinals

        for index in range(directory.number_of_names):
            (name_rva,) = struct.unpack("<I", self.read_memory_cached(names + 4 * index, 4))
            (ordinal,) = struct.unpack("<H", self.read_memory_cached(ordinals + 2 * index, 2))
            (function_rva,) = struct.unpack(
                "<I", self.read_memory_cached(functions + 4 * ordinal, 4)
            )
            name = self.read_string(base + name_rva, _EXPORT_NAME_MAX)
            module_info.add_export(ModuleExportInfo(name, ordinal, function_rva))