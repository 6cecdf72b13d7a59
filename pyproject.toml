[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "splitproxy"
version = "0.1.0"
description = "Storage, telemetry and deferred-recording components for a feature-flag proxy server"
requires-python = ">=3.10"
dependencies = []
keywords = ["feature-flags", "proxy", "segments", "telemetry", "storage"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["splitproxy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
