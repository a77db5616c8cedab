[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "webfs"
version = "1.21"
description = "A lightweight HTTP server for static content with directory listings, byte ranges and simple CGI"
requires-python = ">=3.10"
dependencies = []
keywords = ["http", "server", "static", "webserver", "cgi", "directory-listing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
webfsd = "webfs.server:main"

[tool.hatch.build.targets.wheel]
packages = ["webfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
