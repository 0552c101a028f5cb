[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dmadump"
version = "0.1.0"
description = "Rebuild and repair import tables of PE64 images dumped from process memory"
requires-python = ">=3.10"
dependencies = []
keywords = ["pe", "portable-executable", "memory-dump", "iat", "imports", "reverse-engineering"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Debuggers",
    "Topic :: Software Development :: Disassemblers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dmadump"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
