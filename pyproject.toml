[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "micropay"
version = "0.1.0"
description = "A small bank server and peer-to-peer payment client over TLS"
requires-python = ">=3.10"
dependencies = []
keywords = ["payments", "ledger", "peer-to-peer", "tls", "socket", "banking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
micropay-server = "micropay.server:main"
micropay-client = "micropay.client:main"

[tool.hatch.build.targets.wheel]
packages = ["micropay"]

[tool.pytest.ini_options]
addopts = "-ra"
