import struct
from types import SimpleNamespace

from dmadump import pe
from dmadump.dynamic_resolver import DynamicIATResolver
from dmadump.iat_resolver import ResolvedImport
from dmadump.modules import ModuleExportInfo, ModuleInfo, ModuleList
from dmadump.section_builder import SectionBuilder

LIB_BASE = 0x7FF800000000
SLEEP_RVA = 0x1234
TARGET_BASE = 0x140000000
STUB_RVA = 0x5000
POINTER_RVA = 0x2010
CALL_RVA = 0x1100
FIRST_THUNK = 0x3080

TEXT = pe.IMAGE_SCN_CNT_CODE | pe.IMAGE_SCN_MEM_EXECUTE | pe.IMAGE_SCN_MEM_READ
DATA = pe.IMAGE_SCN_CNT_INITIALIZED_DATA | pe.IMAGE_SCN_MEM_READ | pe.IMAGE_SCN_MEM_WRITE
RDATA = pe.IMAGE_SCN_CNT_INITIALIZED_DATA | pe.IMAGE_SCN_MEM_READ


def _image():
    image = bytearray(0x4000)
    struct.pack_into("<i", image, 0x3C, 0x40)
    nt = pe.get_nt_headers(image)
    nt.size_of_optional_header = pe.OPTIONAL_HEADER64_SIZE
    for index, (va, chars) in enumerate([(0x1000, TEXT), (0x2000, DATA), (0x3000, RDATA)]):
        section = nt.section_header(index)
        section.virtual_address = va
        section.virtual_size = 0x1000
        section.pointer_to_raw_data = va
        section.size_of_raw_data = 0x1000
        section.characteristics = chars
    nt.number_of_sections = 3

    descriptor = pe.ImportDescriptor(image, 0x3000)
    descriptor.original_first_thunk = 0x3100
    descriptor.name = 0x3200
    descriptor.first_thunk = FIRST_THUNK
    struct.pack_into("<Q", image, 0x3100, 0x3300)
    struct.pack_into("<Q", image, FIRST_THUNK, 0x3300)
    image[0x3200:0x320D] = b"KERNEL32.dll\0"
    image[0x3302:0x3308] = b"Sleep\0"
    directory = nt.optional_header.import_directory
    directory.virtual_address = 0x3000
    directory.size = 0x28

    struct.pack_into("<Q", image, POINTER_RVA, LIB_BASE + SLEEP_RVA)
    image[CALL_RVA : CALL_RVA + 2] = b"\xff\x15"
    struct.pack_into("<i", image, CALL_RVA + 2, POINTER_RVA - (CALL_RVA + 6))
    return image


def _builder():
    module_list = ModuleList()
    module_list.add_module(
        ModuleInfo(
            "KERNEL32.DLL",
            "C:/Windows/System32/KERNEL32.DLL",
            LIB_BASE,
            0x10000,
            [ModuleExportInfo("Sleep", 1, SLEEP_RVA)],
        )
    )

    def find_import_function(library, function):
        if function == "Sleep":
            return SimpleNamespace(redirect_stub=STUB_RVA)
        return None

    return SimpleNamespace(
        dumper=SimpleNamespace(module_list=module_list),
        module_info=ModuleInfo("target.exe", "target.exe", TARGET_BASE, 0x4000),
        find_import_function=find_import_function,
    )


def test_resolve_finds_pointer_in_data_section():
    resolver = DynamicIATResolver(_builder())
    assert resolver.resolve(_image()) is True
    expected = ResolvedImport("KERNEL32.DLL", "Sleep")
    assert resolver.imports == [expected]
    assert dict(resolver.resolved_imports_by_rva) == {POINTER_RVA: expected}


def test_resolve_ignores_addresses_without_export():
    image = _image()
    struct.pack_into("<Q", image, POINTER_RVA, LIB_BASE + SLEEP_RVA + 1)
    resolver = DynamicIATResolver(_builder())
    resolver.resolve(image)
    assert resolver.imports == []


def test_resolve_skips_executable_sections():
    image = _image()
    struct.pack_into("<Q", image, 0x1800, LIB_BASE + SLEEP_RVA)
    resolver = DynamicIATResolver(_builder())
    resolver.resolve(image)
    assert list(resolver.resolved_imports_by_rva) == [POINTER_RVA]


def test_resolve_skips_pointers_inside_import_directory():
    image = _image()
    directory = pe.get_optional_header64(image).import_directory
    directory.virtual_address = 0x2000
    directory.size = 0x100
    resolver = DynamicIATResolver(_builder())
    resolver.resolve(image)
    assert resolver.imports == []


def test_resolve_honours_required_attributes():
    image = _image()
    struct.pack_into("<Q", image, 0x3800, LIB_BASE + SLEEP_RVA)
    resolver = DynamicIATResolver(_builder(), required_scn_attrs=pe.IMAGE_SCN_MEM_READ)
    resolver.resolve(image)
    assert sorted(resolver.resolved_imports_by_rva) == [POINTER_RVA, 0x3800]


def test_apply_patches_redirects_pointer_and_call():
    image = _image()
    resolver = DynamicIATResolver(_builder())
    resolver.resolve(image)
    code = SectionBuilder(0x4000, 0x4000, 0x1000, 0x200)
    assert resolver.apply_patches(image, code) is True

    (pointer,) = struct.unpack_from("<Q", image, POINTER_RVA)
    assert pointer == TARGET_BASE + STUB_RVA

    (displacement,) = struct.unpack_from("<i", image, CALL_RVA + 2)
    assert CALL_RVA + 6 + displacement == FIRST_THUNK
    assert image[CALL_RVA : CALL_RVA + 2] == b"\xff\x15"


def test_apply_patches_leaves_unmatched_library_alone():
    image = _image()
    image[0x3200:0x320D] = b"USER32.dll\0\0\0"
    resolver = DynamicIATResolver(_builder())
    resolver.resolve(image)
    resolver.apply_patches(image, SectionBuilder(0x4000, 0x4000, 0x1000, 0x200))
    (displacement,) = struct.unpack_from("<i", image, CALL_RVA + 2)
    assert CALL_RVA + 6 + displacement == POINTER_RVA


def test_default_attribute_masks():
    resolver = DynamicIATResolver(_builder())
    assert resolver.required_scn_attrs == pe.IMAGE_SCN_MEM_READ | pe.IMAGE_SCN_MEM_WRITE
    assert resolver.allowed_scn_attrs & pe.IMAGE_SCN_MEM_EXECUTE == 0
    assert resolver.allowed_scn_attrs | pe.IMAGE_SCN_MEM_EXECUTE == 0xFFFFFFFF