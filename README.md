# dmadump

This is a library for turning a 64-bit PE image read out of process memory back into a
file that disassemblers and loaders can work with. It can do four things:

- realign sections to their virtual layout;
- read module export tables through a memory reader that you supply;
- find import pointers that were resolved at run time;
- rebuild the import directory so those imports show up again.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `dmadump.pe` gives read/write views over the PE32+ headers of an image held in a
  `bytearray`:
  - `get_nt_headers` and `get_optional_header64`;
  - `NtHeaders`, with `sections()`, `section_header()`, `rva_to_file_offset()`,
    `file_offset_to_rva()` and `section_end_va()`;
  - `SectionHeader`, `DataDirectory`, `ImportDescriptor`, `ExportDirectory`
    and `ImportDirLayout`;
  - helpers: `iter_import_descriptors`, `read_c_string`, `snap_by_ordinal` and
    `ordinal_of`.
- `dmadump.utils` holds `align`, `convert_image_sections_raw_to_va` and
  `append_image_section_header`. It also has ASCII case-insensitive name helpers: `to_lower`, `iequals`,
  `compare_library_name` and `simplify_library_name`.
- `dmadump.logger` prints coloured console messages: `init`, `write`,
  `write_level`, `info`, `warn`, `error` and `success`. Nothing is printed until
  `init` is given a stream.
- `dmadump.section_builder` provides `SectionBuilder`, which collects the bytes of a
  new section together with its offset, RVA, alignments and characteristics.
- `dmadump.modules` provides:
  - `ModuleExportInfo`;
  - `ModuleInfo`, with lookups by export name, ordinal, VA and RVA;
  - `ModuleList`, which keys modules by simplified library name and finds a module
    by name or by address.
- `dmadump.dumper` provides the abstract `Dumper` and `MemoryReadError`:
  - `read_memory_cached` reads through a 4 KiB page cache.
  - `read_string` reads a NUL-terminated string.
  - `load_module_eat` fills a `ModuleInfo` with the named exports read from the
    target.
  - A subclass supplies `read_memory(va, size)`, which raises `MemoryReadError` on
    failure. It also supplies `load_module_info()` and a `module_list` property.
- `dmadump.iat_resolver` provides the abstract `IATResolver`, `ResolvedImport` and
  `find_direct_calls`. The last one locates `call [rip+rel32]` instructions that go
  through a given pointer.
- `dmadump.dynamic_resolver` provides `DynamicIATResolver`, which does three things:
  - scans readable, writable, non-executable sections for pointers to exported
    functions of known modules;
  - redirects those pointers to stubs;
  - repoints the `call [rip+x]` sites that use them at the rebuilt import table.
- `dmadump.iat_builder` provides `IATBuilder`, `ImportLibrary` and `ImportFunction`.
  `IATBuilder` gathers the original and resolved imports, writes a new import
  directory and redirect stubs, and patches the image in place.

## Example

```python
import sys

from dmadump import logger
from dmadump.dumper import Dumper, MemoryReadError
from dmadump.dynamic_resolver import DynamicIATResolver
from dmadump.iat_builder import IATBuilder
from dmadump.modules import ModuleList
from dmadump.pe import get_optional_header64
from dmadump.utils import convert_image_sections_raw_to_va


class MyDumper(Dumper):
    def __init__(self):
        super().__init__()
        self._modules = ModuleList()

    @property
    def module_list(self):
        return self._modules

    def load_module_info(self):
        ...  # add ModuleInfo entries, calling self.load_module_eat(module) for each

    def read_memory(self, va, size):
        ...  # return bytes, or raise MemoryReadError(va)


logger.init(sys.stdout)

dumper = MyDumper()
dumper.load_module_info()
module = dumper.module_list.module_by_name("target.exe")

image = bytearray(dumper.read_memory_cached(module.image_base, module.image_size))
convert_image_sections_raw_to_va(image)
get_optional_header64(image).image_base = module.image_base

builder = IATBuilder(dumper, module)
builder.add_resolver(DynamicIATResolver)
builder.rebuild(image)

with open("target.dump.exe", "wb") as out:
    out.write(image)
```

The rebuilt image gets two new sections:

- `.dmp0` holds the import directory.
- `.dmp1` holds the `jmp [rip+x]` stubs that the original and dynamic import slots
  now point to.

## What it does not do

The package does not read any process's memory by itself. There is no `Dumper`
subclass for a live process, a memory-acquisition device or a memory image file. You
have to write one that provides `read_memory`, `load_module_info` and `module_list`.

There is no command-line tool either. Finding the target process, choosing the module
and saving the dump are left to the calling code, as in the example above.

Only 64-bit (PE32+) images are handled.