[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ceciproxy"
version = "0.1.0"
description = "HTTP, SOCKS5 and round-robin TCP forwarding proxies"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["proxy", "socks5", "http-proxy", "tcp-proxy", "tunnel", "forwarding"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ceciproxy"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
