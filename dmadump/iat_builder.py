"""Rebuilds the import directory of a dumped image and redirects its IAT."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Optional, Union

from dmadump import logger as log
from dmadump import pe
from dmadump.section_builder import SectionBuilder
from dmadump.utils import align, append_image_section_header, compare_library_name

ImportName = Union[str, int]

_U32_MASK = 0xFFFFFFFF
_U64_MASK = (1 << 64) - 1
_JMP_RIP_OPCODE = b"\xff\x25"
_STUB_SIZE = 6
_HINT_SIZE = 2
_DATA_SECTION_NAME = b".dmp0\0\0\0"
_CODE_SECTION_NAME = b".dmp1\0\0\0"


def _same_name(lhs: ImportName, rhs: ImportName) -> bool:
    """Names match only when both are names or both are ordinals."""
    return type(lhs) is type(rhs) and lhs == rhs


def _encode(text: str) -> bytes:
    return text.encode("latin-1")


def _resize(image: bytearray, size: int) -> None:
    if len(image) < size:
        image.extend(bytes(size - len(image)))
    else:
        del image[size:]


def _to_file_offset(nt: pe.NtHeaders, rva: int) -> int:
    offset = nt.rva_to_file_offset(rva)
    if offset is None:
        raise ValueError(f"RVA {rva:#x} is not inside any section")
    return offset


def _to_rva(nt: pe.NtHeaders, file_offset: int) -> int:
    rva = nt.file_offset_to_rva(file_offset)
    if rva is None:
        raise ValueError(f"file offset {file_offset:#x} is not inside any section")
    return rva


def _read_thunk(image: bytearray, offset: int) -> int:
    (value,) = struct.unpack_from("<Q", image, offset)
    return value


@dataclass
class ImportFunction:
    """A function imported by name or by ordinal."""

    name: ImportName
    redirect_stub: Optional[int] = None

    @classmethod
    def from_name(cls, name: str) -> "ImportFunction":
        return cls(str(name))

    @classmethod
    def from_ordinal(cls, ordinal: int) -> "ImportFunction":
        if not 0 <= ordinal <= 0xFFFF:
            raise ValueError(f"ordinal {ordinal} does not fit in 16 bits")
        return cls(int(ordinal))

    @property
    def by_ordinal(self) -> bool:
        return isinstance(self.name, int)


@dataclass
class ImportLibrary:
    """Functions taken from one DLL."""

    name: str
    functions: list[ImportFunction] = field(default_factory=list)

    def function_by_name(self, name: ImportName) -> Optional[ImportFunction]:
        """The function with this name, or this ordinal when given an int."""
        return next((f for f in self.functions if _same_name(f.name, name)), None)

    def function_by_ordinal(self, ordinal: int) -> Optional[ImportFunction]:
        return next(
            (f for f in self.functions if f.by_ordinal and f.name == ordinal), None
        )

    def add_function(self, function: ImportFunction) -> None:
        """Add ``function`` unless one with the same name is present."""
        if self.function_by_name(function.name) is None:
            self.functions.append(function)


class IATBuilder:
    """Collects imports of a dumped module and writes a fresh import table."""

    def __init__(self, dumper, module_info) -> None:
        self.dumper = dumper
        self.module_info = module_info
        self.resolvers: list = []
        self._imports: list[ImportLibrary] = []

    @property
    def imports(self) -> tuple[ImportLibrary, ...]:
        return tuple(self._imports)

    def add_import(self, library_name: str, function: ImportFunction) -> None:
        """Add ``function`` to the library matching ``library_name``."""
        for library in self._imports:
            if compare_library_name(library.name, library_name):
                library.add_function(function)
                return
        self._imports.append(ImportLibrary(library_name, [function]))

    def add_resolver(self, resolver_type, *args, **kwargs):
        """Create a resolver bound to this builder and register it."""
        resolver = resolver_type(self, *args, **kwargs)
        self.resolvers.append(resolver)
        return resolver

    def find_import_function(
        self, library: str, function: ImportName
    ) -> Optional[ImportFunction]:
        for imported in self._imports:
            if compare_library_name(imported.name, library):
                found = imported.function_by_name(function)
                if found is not None:
                    return found
        return None

    def import_dir_layout(self) -> pe.ImportDirLayout:
        """Offsets of each part of the import directory that will be written."""
        library_name_size = 0
        function_name_size = 0
        thunk_size = 0
        for library in self._imports:
            library_name_size += len(_encode(library.name)) + 1
            for function in library.functions:
                if not function.by_ordinal:
                    function_name_size += _HINT_SIZE + len(_encode(function.name)) + 1
            thunk_size += pe.THUNK_SIZE * (len(library.functions) + 1)

        descriptor_size = pe.IMPORT_DESCRIPTOR_SIZE * (len(self._imports) + 1)

        layout = pe.ImportDirLayout()
        layout.descriptor_offset = 0
        layout.first_thunk_offset = layout.descriptor_offset + descriptor_size
        layout.original_first_thunk_offset = layout.first_thunk_offset + thunk_size
        layout.library_name_offset = layout.original_first_thunk_offset + thunk_size
        layout.function_name_offset = layout.library_name_offset + library_name_size
        layout.size = layout.function_name_offset + function_name_size
        return layout

    def rebuild(self, image: bytearray) -> bool:
        """Rewrite ``image`` in place with a new import table and stubs."""
        self._add_original_imports(image)
        self._resolve_imports(image)
        original_import_dir_va = pe.get_optional_header64(image).import_directory.virtual_address
        self._rebuild_import_dir(image)
        self._apply_patches(image, original_import_dir_va)
        self._update_headers(image)
        return True

    def _add_original_imports(self, image: bytearray) -> None:
        import_dir = pe.get_optional_header64(image).import_directory
        if import_dir.virtual_address == 0 or import_dir.size == 0:
            return

        for descriptor in pe.iter_import_descriptors(image, import_dir.virtual_address):
            library = pe.read_c_string(image, descriptor.name)
            thunk = descriptor.original_first_thunk
            while (value := _read_thunk(image, thunk)) != 0:
                if pe.snap_by_ordinal(value):
                    self.add_import(library, ImportFunction.from_ordinal(pe.ordinal_of(value)))
                else:
                    name = pe.read_c_string(image, value + _HINT_SIZE)
                    self.add_import(library, ImportFunction.from_name(name))
                thunk += pe.THUNK_SIZE

    def _resolve_imports(self, image: bytearray) -> None:
        if self.resolvers:
            log.info("resolving imports...")
        for resolver in self.resolvers:
            if resolver.resolve(image):
                for resolved in resolver.imports:
                    self.add_import(resolved.library, ImportFunction.from_name(resolved.function))
        log.write("\n")

    def _new_section(self, image: bytearray) -> SectionBuilder:
        header = pe.get_optional_header64(image)
        section_alignment = header.section_alignment
        file_alignment = header.file_alignment
        return SectionBuilder(
            align(len(image), file_alignment),
            align(len(image), section_alignment),
            section_alignment,
            file_alignment,
        )

    @staticmethod
    def _commit_section(image: bytearray, section: SectionBuilder, name: bytes) -> None:
        header = append_image_section_header(image)
        header.name = name
        header.pointer_to_raw_data = section.offset
        header.virtual_address = section.rva
        header.virtual_size = section.raw_size
        header.size_of_raw_data = section.file_size
        header.characteristics = section.characteristics

    def _rebuild_import_dir(self, image: bytearray) -> None:
        log.info("rebuilding import address table...")
        section = self._new_section(image)
        section.add_characteristics(
            pe.IMAGE_SCN_CNT_INITIALIZED_DATA | pe.IMAGE_SCN_MEM_READ | pe.IMAGE_SCN_MEM_WRITE
        )

        self._construct_import_dir(section)
        import_dir_size = section.raw_size

        self._commit_section(image, section, _DATA_SECTION_NAME)

        import_dir = pe.get_optional_header64(image).import_directory
        import_dir.virtual_address = section.rva
        import_dir.size = import_dir_size

        section.finalize()
        _resize(image, section.offset)
        image.extend(section.data)

    def _construct_import_dir(self, section: SectionBuilder) -> None:
        layout = self.import_dir_layout()
        dir_rva = section.rva + section.raw_size
        base = dir_rva - section.rva
        section.data.extend(bytes(layout.size))
        data = section.data

        function_index = 0
        library_name_offset = layout.library_name_offset
        function_name_offset = layout.function_name_offset

        for index, library in enumerate(self._imports):
            descriptor = pe.ImportDescriptor(
                data, base + layout.descriptor_offset + pe.IMPORT_DESCRIPTOR_SIZE * index
            )
            thunk_delta = pe.THUNK_SIZE * (index + function_index)
            descriptor.original_first_thunk = (
                dir_rva + layout.original_first_thunk_offset + thunk_delta
            )
            descriptor.forwarder_chain = 0
            descriptor.name = dir_rva + library_name_offset
            descriptor.first_thunk = dir_rva + layout.first_thunk_offset + thunk_delta

            library_bytes = _encode(library.name) + b"\0"
            start = base + library_name_offset
            data[start : start + len(library_bytes)] = library_bytes

            for function in library.functions:
                thunk_offset = (
                    base
                    + layout.original_first_thunk_offset
                    + pe.THUNK_SIZE * (index + function_index)
                )
                if function.by_ordinal:
                    value = function.name | pe.IMAGE_ORDINAL_FLAG64
                else:
                    value = dir_rva + function_name_offset
                    entry = struct.pack("<H", 0) + _encode(function.name) + b"\0"
                    start = base + function_name_offset
                    data[start : start + len(entry)] = entry
                    function_name_offset += len(entry)
                struct.pack_into("<Q", data, thunk_offset, value)
                function_index += 1

            library_name_offset += len(library_bytes)

    def _apply_patches(self, image: bytearray, original_import_dir_va: int) -> None:
        code_section = self._new_section(image)
        code_section.add_characteristics(
            pe.IMAGE_SCN_CNT_INITIALIZED_DATA
            | pe.IMAGE_SCN_CNT_CODE
            | pe.IMAGE_SCN_MEM_READ
            | pe.IMAGE_SCN_MEM_EXECUTE
        )

        self._build_redirect_stubs(image, code_section)
        self._redirect_original_iat(image, original_import_dir_va)

        log.info("applying patches...")
        for resolver in self.resolvers:
            resolver.apply_patches(image, code_section)

        self._commit_section(image, code_section, _CODE_SECTION_NAME)

        code_section.finalize()
        _resize(image, code_section.offset)
        image.extend(code_section.data)

    def _build_redirect_stubs(self, image: bytearray, code_section: SectionBuilder) -> None:
        nt = pe.get_nt_headers(image)
        new_import_dir = nt.optional_header.import_directory

        log.info("building IAT redirect stubs...")

        start = _to_file_offset(nt, new_import_dir.virtual_address)
        for descriptor in pe.iter_import_descriptors(image, start):
            library = pe.read_c_string(image, _to_file_offset(nt, descriptor.name))
            original_thunk = _to_file_offset(nt, descriptor.original_first_thunk)
            first_thunk = _to_file_offset(nt, descriptor.first_thunk)

            while (value := _read_thunk(image, original_thunk)) != 0:
                stub_rva = code_section.rva + code_section.raw_size
                slot_rva = _to_rva(nt, first_thunk)
                displacement = (slot_rva - (stub_rva + _STUB_SIZE)) & _U32_MASK
                code_section.append(_JMP_RIP_OPCODE + struct.pack("<I", displacement))

                if pe.snap_by_ordinal(value):
                    key: ImportName = pe.ordinal_of(value)
                else:
                    key = pe.read_c_string(image, _to_file_offset(nt, value) + _HINT_SIZE)
                function = self.find_import_function(library, key)
                if function is not None:
                    function.redirect_stub = stub_rva

                original_thunk += pe.THUNK_SIZE
                first_thunk += pe.THUNK_SIZE

    def _redirect_original_iat(self, image: bytearray, original_import_dir_va: int) -> None:
        nt = pe.get_nt_headers(image)

        log.info("redirecting original IAT...")

        if original_import_dir_va == 0:
            return

        image_base = self.module_info.image_base
        for descriptor in pe.iter_import_descriptors(image, original_import_dir_va):
            library = pe.read_c_string(image, descriptor.name)
            original_thunk = descriptor.original_first_thunk
            first_thunk = descriptor.first_thunk

            while (value := _read_thunk(image, original_thunk)) != 0:
                if pe.snap_by_ordinal(value):
                    key: ImportName = pe.ordinal_of(value)
                else:
                    key = pe.read_c_string(image, _to_file_offset(nt, value) + _HINT_SIZE)
                function = self.find_import_function(library, key)
                if function is not None:
                    if function.redirect_stub is None:
                        raise ValueError(f"no redirect stub for {library}:{key}")
                    struct.pack_into(
                        "<Q", image, first_thunk, (image_base + function.redirect_stub) & _U64_MASK
                    )
                original_thunk += pe.THUNK_SIZE
                first_thunk += pe.THUNK_SIZE

    @staticmethod
    def _update_headers(image: bytearray) -> None:
        nt = pe.get_nt_headers(image)
        header = nt.optional_header
        last_section_offset = nt.section_header(nt.number_of_sections - 1).offset
        header.size_of_headers = max(
            header.size_of_headers,
            align(last_section_offset + pe.SECTION_HEADER_SIZE, header.file_alignment),
        )
        header.size_of_image = align(len(image), header.section_alignment)