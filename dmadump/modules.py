"""Descriptions of the modules loaded in a process and their exports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePath
from types import MappingProxyType
from typing import Mapping, Optional, Union

from dmadump.utils import simplify_library_name


@dataclass(frozen=True)
class ModuleExportInfo:
    """A named export of a module."""

    name: str
    ordinal: int
    rva: int


@dataclass
class ModuleInfo:
    """A module mapped in the target, with its exports."""

    name: str
    file_path: Union[str, PurePath]
    image_base: int
    image_size: int
    exports: list[ModuleExportInfo] = field(default_factory=list)
    library_id: str = field(init=False)

    def __post_init__(self) -> None:
        self.library_id = simplify_library_name(self.name)
        self.exports = list(self.exports)

    def add_export(self, export_info: ModuleExportInfo) -> None:
        self.exports.append(export_info)

    def export_by_name(self, name: str) -> Optional[ModuleExportInfo]:
        return next((e for e in self.exports if e.name == name), None)

    def export_by_ordinal(self, ordinal: int) -> Optional[ModuleExportInfo]:
        return next((e for e in self.exports if e.ordinal == ordinal), None)

    def export_by_va(self, va: int) -> Optional[ModuleExportInfo]:
        return next((e for e in self.exports if self.image_base + e.rva == va), None)

    def export_by_rva(self, rva: int) -> Optional[ModuleExportInfo]:
        return next((e for e in self.exports if e.rva == rva), None)


class ModuleList:
    """Modules keyed by their simplified library name."""

    def __init__(self) -> None:
        self._modules: dict[str, ModuleInfo] = {}

    def __len__(self) -> int:
        return len(self._modules)

    def __iter__(self):
        return iter(self._modules.values())

    @property
    def modules(self) -> Mapping[str, ModuleInfo]:
        """Read-only mapping from library id to module."""
        return MappingProxyType(self._modules)

    def add_module(self, module_info: ModuleInfo) -> None:
        """Add a module unless one with the same library id is present."""
        self._modules.setdefault(module_info.library_id, module_info)

    def module_by_name(self, module_name: str) -> Optional[ModuleInfo]:
        return self._modules.get(simplify_library_name(module_name))

    def module_by_address(self, address: int) -> Optional[ModuleInfo]:
        for module in self._modules.values():
            if (
                module.image_base
                and module.image_size
                and module.image_base <= address < module.image_base + module.image_size
            ):
                return module
        return None