"""Base class for strategies that recover imports hidden from the import table."""

from __future__ import annotations

import abc
import struct
from dataclasses import dataclass

from dmadump.section_builder import SectionBuilder

_U64_MAX = (1 << 64) - 1
_CALL_RIP_OPCODE = b"\xff\x15"
_CALL_RIP_LENGTH = 6


@dataclass(frozen=True)
class ResolvedImport:
    """A library function that a resolver found the image using."""

    library: str
    function: str


class IATResolver(abc.ABC):
    """Finds imports in a dumped image and patches the image to use them.

    ``iat_builder`` must expose ``dumper`` (whose ``module_list`` lists the
    target's modules), ``module_info`` (the module being dumped) and
    ``find_import_function(library, function)``.
    """

    def __init__(self, iat_builder) -> None:
        self.iat_builder = iat_builder

    @abc.abstractmethod
    def resolve(self, image: bytearray) -> bool:
        """Scan ``image`` for imports; return whether resolution succeeded."""

    @property
    @abc.abstractmethod
    def imports(self) -> list[ResolvedImport]:
        """The imports found by :meth:`resolve`."""

    @abc.abstractmethod
    def apply_patches(self, image: bytearray, code_section: SectionBuilder) -> bool:
        """Rewrite ``image`` to go through the rebuilt import table."""

    def lowest_module_start_address(self) -> int:
        """The lowest image base of any known module."""
        modules = self.iat_builder.dumper.module_list
        return min((module.image_base for module in modules), default=_U64_MAX)

    def highest_module_end_address(self) -> int:
        """The highest end address of any known module."""
        modules = self.iat_builder.dumper.module_list
        return max(
            (module.image_base + module.image_size for module in modules), default=0
        )


def find_direct_calls(data: bytes, search_rva: int, function_ptr_rva: int) -> list[int]:
    """RVAs of ``call [rip+rel32]`` instructions in ``data`` that go through
    the pointer at ``function_ptr_rva``; ``data`` starts at ``search_rva``."""
    result = []
    limit = len(data) - _CALL_RIP_LENGTH
    position = data.find(_CALL_RIP_OPCODE, 0)
    while 0 <= position < limit:
        (relative,) = struct.unpack_from("<i", data, position + 2)
        target = position + search_rva + relative + _CALL_RIP_LENGTH
        if target == function_ptr_rva:
            result.append(position + search_rva)
        position = data.find(_CALL_RIP_OPCODE, position + 1)
    return result