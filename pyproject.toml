[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dctool"
version = "2.0.0"
description = "Host-side tool for the Dreamcast serial loader: upload, download, execute and serve console I/O"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = ["dreamcast", "serial", "loader", "dcload", "elf", "gdb"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
dc-tool = "dctool.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["dctool"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
