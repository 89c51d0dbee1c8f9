[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mctplink"
version = "0.1.0"
description = "MCTP packet headers with serial, SMBus and PCIe VDM framing bindings"
requires-python = ">=3.10"
dependencies = []
keywords = ["mctp", "dmtf", "smbus", "pcie", "vdm", "serial", "management"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mctplink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
