[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gameproxy"
version = "0.1.0"
description = "TCP reverse proxy for game servers with length-prefixed framing, authentication and SQLite-backed state"
requires-python = ">=3.10"
dependencies = []
keywords = ["reverse-proxy", "tcp", "game-server", "sqlite", "framing"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gameproxy = "gameproxy.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["gameproxy"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
