[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "outproto"
version = "0.1.0"
description = "Address encodings, framing and client handshakes for Trojan, Juicity, Shadowsocks and SOCKS5 proxy protocols"
requires-python = ">=3.10"
dependencies = []
keywords = ["proxy", "socks5", "trojan", "shadowsocks", "juicity", "framing"]
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["outproto"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
