[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "whalestream"
version = "0.1.0"
description = "Trade-stream server and client that detect large (whale) trades and track session and rolling VWAP"
requires-python = ">=3.10"
keywords = ["trading", "vwap", "whale", "market-data", "streaming", "binary-protocol", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Office/Business :: Financial :: Investment",
]
dependencies = [
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
whalestream-server = "whalestream.server:main"
whalestream-client = "whalestream.client:main"

[tool.hatch.build.targets.wheel]
packages = ["whalestream"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
