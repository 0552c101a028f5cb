"""Rebuild import tables of PE64 images dumped from process memory."""

__version__ = "0.1.0"

__all__ = [
    "pe",
    "utils",
    "logger",
    "section_builder",
    "modules",
    "dumper",
    "iat_resolver",
    "dynamic_resolver",
    "iat_builder",
]