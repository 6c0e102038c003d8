[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mctpstack"
version = "0.1.0"
description = "MCTP endpoint stack: packetisation, reassembly, bridging, control commands and ASPEED LPC, PCIe and I3C bindings"
requires-python = ">=3.10"
dependencies = []
keywords = ["mctp", "dmtf", "bmc", "pcie", "lpc", "kcs", "i3c", "management"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mctpstack"]

[tool.pytest.ini_options]
addopts = "-ra"
