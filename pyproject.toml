[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rzmq"
version = "0.1.0"
description = "Asyncio building blocks for ZeroMQ-style messaging: ROUTER and SUB patterns, TCP, IPC and in-process transports"
requires-python = ">=3.10"
dependencies = []
keywords = ["zeromq", "messaging", "asyncio", "pubsub", "router", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[tool.hatch.build.targets.wheel]
packages = ["rzmq"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
