[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "memwalk"
version = "0.1.0"
description = "Virtual memory, page table walker and instruction trace tools for memory-hierarchy simulation"
requires-python = ">=3.10"
dependencies = []
keywords = ["simulation", "virtual-memory", "page-table-walker", "trace", "microarchitecture"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cvp2champsim = "memwalk.cvp2champsim:main"

[tool.hatch.build.targets.wheel]
packages = ["memwalk"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
