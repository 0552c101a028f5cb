"""Helpers for alignment, section table edits and library name matching."""

from __future__ import annotations

import string

from dmadump import pe

_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def align(value: int, alignment: int) -> int:
    """Round ``value`` up to a multiple of the power-of-two ``alignment``."""
    return (value + alignment - 1) & ~(alignment - 1)


def convert_image_sections_raw_to_va(image: bytearray) -> None:
    """Make every section's raw layout match its in-memory layout."""
    for section in pe.get_nt_headers(image).sections():
        section.pointer_to_raw_data = section.virtual_address
        section.size_of_raw_data = section.virtual_size


def append_image_section_header(image: bytearray) -> pe.SectionHeader:
    """Claim the next section table slot and return its header."""
    nt = pe.get_nt_headers(image)
    header = nt.section_header(nt.number_of_sections)
    nt.number_of_sections += 1
    return header


def to_lower(text: str) -> str:
    """Lower-case the ASCII letters of ``text``."""
    return text.translate(_ASCII_LOWER)


def iequals(lhs: str, rhs: str) -> bool:
    """Compare two strings ignoring ASCII case."""
    return len(lhs) == len(rhs) and to_lower(lhs) == to_lower(rhs)


def _strip_last_extension(name: str) -> str:
    dot = name.rfind(".")
    return name if dot < 0 else name[:dot]


def compare_library_name(lhs: str, rhs: str) -> bool:
    """Compare library names ignoring case and the last extension."""
    return iequals(_strip_last_extension(lhs), _strip_last_extension(rhs))


def simplify_library_name(module_name: str) -> str:
    """The lower-cased module path without its file extension."""
    cut = max(module_name.rfind("/"), module_name.rfind("\\")) + 1
    directory, filename = module_name[:cut], module_name[cut:]
    if filename not in (".", ".."):
        dot = filename.rfind(".")
        if dot > 0:
            filename = filename[:dot]
    return to_lower(directory + filename)