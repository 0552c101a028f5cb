"""Recovers imports stored as plain function pointers in writable data."""

from __future__ import annotations

import struct
from types import MappingProxyType
from typing import Mapping

from dmadump import logger as log
from dmadump import pe
from dmadump.iat_resolver import IATResolver, ResolvedImport, find_direct_calls
from dmadump.section_builder import SectionBuilder
from dmadump.utils import compare_library_name

_U32_MASK = 0xFFFFFFFF


class DynamicIATResolver(IATResolver):
    """Finds pointers to exported functions in data sections and redirects
    them, and the calls through them, to the rebuilt import table."""

    DEFAULT_REQUIRED_SCN_ATTRS = pe.IMAGE_SCN_MEM_READ | pe.IMAGE_SCN_MEM_WRITE
    DEFAULT_ALLOWED_SCN_ATTRS = ~pe.IMAGE_SCN_MEM_EXECUTE & _U32_MASK

    def __init__(
        self,
        iat_builder,
        required_scn_attrs: int = DEFAULT_REQUIRED_SCN_ATTRS,
        allowed_scn_attrs: int = DEFAULT_ALLOWED_SCN_ATTRS,
    ) -> None:
        super().__init__(iat_builder)
        self.required_scn_attrs = required_scn_attrs
        self.allowed_scn_attrs = allowed_scn_attrs
        self._resolved_imports: list[ResolvedImport] = []
        self._resolved_by_rva: dict[int, ResolvedImport] = {}

    @property
    def imports(self) -> list[ResolvedImport]:
        return self._resolved_imports

    @property
    def resolved_imports_by_rva(self) -> Mapping[int, ResolvedImport]:
        """Read-only mapping from pointer RVA to the import stored there."""
        return MappingProxyType(self._resolved_by_rva)

    def _section_scanned(self, section: pe.SectionHeader) -> bool:
        if section.virtual_address & 0xFFF or section.virtual_size < 8:
            return False
        characteristics = section.characteristics
        if characteristics & self.required_scn_attrs != self.required_scn_attrs:
            return False
        return characteristics & ~self.allowed_scn_attrs == 0

    def resolve(self, image: bytearray) -> bool:
        nt = pe.get_nt_headers(image)
        import_dir = nt.optional_header.import_directory
        module_list = self.iat_builder.dumper.module_list
        low = self.lowest_module_start_address()
        high = self.highest_module_end_address()

        for section in nt.sections():
            if not self._section_scanned(section):
                continue

            start = section.virtual_address
            size = section.virtual_size
            words = memoryview(image)[start : start + size - size % 8]
            words = words[: len(words) - len(words) % 8]

            for index, (candidate,) in enumerate(struct.iter_unpack("<Q", words)):
                rva = start + 8 * index
                if import_dir.contains(rva):
                    continue
                if not low <= candidate < high:
                    continue
                module = module_list.module_by_address(candidate)
                if module is None:
                    continue
                export = module.export_by_va(candidate)
                if export is None:
                    continue

                resolved = ResolvedImport(module.name, export.name)
                self._resolved_imports.append(resolved)
                self._resolved_by_rva.setdefault(rva, resolved)
                log.info("found import {}:{} at RVA 0x{:X}", module.name, export.name, rva)

        log.info("resolved {} dynamic imports.", len(self._resolved_by_rva))
        return True

    def apply_patches(self, image: bytearray, code_section: SectionBuilder) -> bool:
        nt = pe.get_nt_headers(image)
        import_dir = nt.optional_header.import_directory
        image_base = self.iat_builder.module_info.image_base

        log.info("redirecting dynamic IAT to stubs...")
        iat_patch_count = 0
        for pointer_rva, resolved in self._resolved_by_rva.items():
            function = self.iat_builder.find_import_function(
                resolved.library, resolved.function
            )
            if function is None:
                continue
            if function.redirect_stub is None:
                raise ValueError(
                    f"no redirect stub for {resolved.library}:{resolved.function}"
                )
            struct.pack_into("<Q", image, pointer_rva, image_base + function.redirect_stub)
            iat_patch_count += 1
        log.info("patched {} dynamic IAT entries.", iat_patch_count)

        log.info("searching for dynamic IAT calls...")
        call_sites: dict[int, ResolvedImport] = {}
        for section in nt.sections():
            if not section.characteristics & pe.IMAGE_SCN_MEM_EXECUTE:
                continue
            start = section.virtual_address
            code = bytes(image[start : start + section.virtual_size])
            for pointer_rva, resolved in self._resolved_by_rva.items():
                for call_rva in find_direct_calls(code, start, pointer_rva):
                    call_sites[call_rva] = resolved
        log.info("found {} dynamic IAT calls.", len(call_sites))

        log.info("patching dynamic IAT calls...")
        call_patch_count = 0
        for call_site, resolved in call_sites.items():
            for descriptor in pe.iter_import_descriptors(image, import_dir.virtual_address):
                library = pe.read_c_string(image, descriptor.name)
                if not compare_library_name(library, resolved.library):
                    continue

                original_thunk = descriptor.original_first_thunk
                first_thunk = descriptor.first_thunk
                while True:
                    (value,) = struct.unpack_from("<Q", image, original_thunk)
                    if value == 0:
                        break
                    if not pe.snap_by_ordinal(value) and (
                        pe.read_c_string(image, value + 2) == resolved.function
                    ):
                        thunk_rva = nt.file_offset_to_rva(first_thunk)
                        if thunk_rva is None:
                            raise ValueError(
                                f"thunk at offset {first_thunk:#x} is not inside a section"
                            )
                        displacement = (thunk_rva - (call_site + 6)) & _U32_MASK
                        struct.pack_into("<I", image, call_site + 2, displacement)
                        call_patch_count += 1
                    original_thunk += pe.THUNK_SIZE
                    first_thunk += pe.THUNK_SIZE
        log.info("patched {} dynamic IAT calls", call_patch_count)

        return True