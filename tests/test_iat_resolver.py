import struct
from types import SimpleNamespace

import pytest

from dmadump.iat_resolver import IATResolver, ResolvedImport, find_direct_calls
from dmadump.modules import ModuleInfo, ModuleList


class _Resolver(IATResolver):
    def resolve(self, image):
        return True

    @property
    def imports(self):
        return []

    def apply_patches(self, image, code_section):
        return True


def _builder(modules):
    module_list = ModuleList()
    for module in modules:
        module_list.add_module(module)
    return SimpleNamespace(dumper=SimpleNamespace(module_list=module_list))


def _call(relative):
    return b"\xff\x15" + struct.pack("<i", relative)


def test_find_direct_calls_finds_matching_call():
    data = b"\x90" * 4 + _call(0x100) + b"\x90" * 8
    search_rva = 0x1000
    target = search_rva + 4 + 6 + 0x100
    assert find_direct_calls(data, search_rva, target) == [search_rva + 4]


def test_find_direct_calls_ignores_other_targets():
    data = b"\x90" * 4 + _call(0x100) + b"\x90" * 8
    target = 0x1000 + 4 + 6 + 0x100
    assert find_direct_calls(data, 0x1000, target + 8) == []


def test_find_direct_calls_negative_displacement():
    data = b"\xcc" * 16 + _call(-0x20) + b"\xcc" * 4
    search_rva = 0x2000
    target = search_rva + 16 + 6 - 0x20
    assert find_direct_calls(data, search_rva, target) == [search_rva + 16]


def test_find_direct_calls_multiple_sites():
    first = _call(0x40)
    data = first + b"\x90" * 10 + _call(0x40 - 16) + b"\x90" * 4
    search_rva = 0x3000
    target = search_rva + 6 + 0x40
    assert find_direct_calls(data, search_rva, target) == [search_rva, search_rva + 16]


def test_find_direct_calls_skips_final_six_bytes():
    data = b"\x00\x00" + _call(0)
    target = 0x1000 + 2 + 6
    assert find_direct_calls(data, 0x1000, target) == []


def test_find_direct_calls_short_data():
    assert find_direct_calls(b"\xff\x15", 0, 6) == []


def test_module_address_bounds():
    first = ModuleInfo("a.dll", "a.dll", 0x10000, 0x2000)
    second = ModuleInfo("b.dll", "b.dll", 0x40000, 0x1000)
    resolver = _Resolver(_builder([second, first]))
    assert resolver.lowest_module_start_address() == first.image_base
    assert resolver.highest_module_end_address() == second.image_base + second.image_size


def test_module_address_bounds_without_modules():
    resolver = _Resolver(_builder([]))
    assert resolver.lowest_module_start_address() == (1 << 64) - 1
    assert resolver.highest_module_end_address() == 0


def test_resolved_import_equality():
    assert ResolvedImport("kernel32.dll", "Sleep") == ResolvedImport("kernel32.dll", "Sleep")
    assert ResolvedImport("kernel32.dll", "Sleep") != ResolvedImport("kernel32.dll", "Beep")


def test_base_class_is_abstract():
    with pytest.raises(TypeError):
        IATResolver(_builder([]))