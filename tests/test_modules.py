import pytest

from dmadump.modules import ModuleExportInfo, ModuleInfo, ModuleList


@pytest.fixture
def kernel32():
    return ModuleInfo(
        "KERNEL32.DLL",
        "C:/Windows/System32/KERNEL32.DLL",
        0x7FF800000000,
        0x10000,
        [
            ModuleExportInfo("CreateFileA", 1, 0x1000),
            ModuleExportInfo("ReadFile", 2, 0x2000),
        ],
    )


def test_library_id_is_simplified(kernel32):
    assert kernel32.library_id == "kernel32"


def test_export_lookups(kernel32):
    assert kernel32.export_by_name("ReadFile").rva == 0x2000
    assert kernel32.export_by_ordinal(1).name == "CreateFileA"
    assert kernel32.export_by_rva(0x1000).name == "CreateFileA"
    assert kernel32.export_by_va(0x7FF800000000 + 0x2000).name == "ReadFile"


def test_missing_exports_return_none(kernel32):
    assert kernel32.export_by_name("readfile") is None
    assert kernel32.export_by_ordinal(99) is None
    assert kernel32.export_by_rva(0x2000 + 1) is None
    assert kernel32.export_by_va(0x2000) is None


def test_add_export(kernel32):
    export = ModuleExportInfo("WriteFile", 3, 0x3000)
    kernel32.add_export(export)
    assert kernel32.exports[-1] == export
    assert kernel32.export_by_name("WriteFile") is export


def test_exports_are_not_shared_with_caller():
    exports = [ModuleExportInfo("A", 0, 0x10)]
    module = ModuleInfo("a.dll", "a.dll", 0x1000, 0x1000, exports)
    module.add_export(ModuleExportInfo("B", 1, 0x20))
    assert len(exports) == 1


def test_module_by_name_ignores_case_and_extension(kernel32):
    modules = ModuleList()
    modules.add_module(kernel32)
    assert modules.module_by_name("kernel32.dll") is kernel32
    assert modules.module_by_name("Kernel32") is kernel32
    assert modules.module_by_name("user32.dll") is None


def test_duplicate_module_is_ignored(kernel32):
    modules = ModuleList()
    modules.add_module(kernel32)
    modules.add_module(ModuleInfo("kernel32.dll", "other", 0x1000, 0x1000))
    assert len(modules) == 1
    assert modules.module_by_name("kernel32.dll") is kernel32
    assert list(modules.modules) == ["kernel32"]


def test_module_by_address_bounds(kernel32):
    modules = ModuleList()
    modules.add_module(kernel32)
    base = kernel32.image_base
    end = base + kernel32.image_size
    assert modules.module_by_address(base) is kernel32
    assert modules.module_by_address(end - 1) is kernel32
    assert modules.module_by_address(end) is None
    assert modules.module_by_address(base - 1) is None


def test_module_without_size_never_matches():
    modules = ModuleList()
    modules.add_module(ModuleInfo("empty.dll", "empty.dll", 0x5000, 0))
    assert modules.module_by_address(0x5000) is None


def test_modules_mapping_is_read_only(kernel32):
    modules = ModuleList()
    modules.add_module(kernel32)
    with pytest.raises(TypeError):
        modules.modules["x"] = kernel32
    assert list(modules.modules) == ["kernel32"]
    assert modules.module_by_name("x") is None