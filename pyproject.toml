[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "extinitiator"
version = "0.1.0"
description = "Subscribe to blockchain endpoints over RPC or WebSocket and keep endpoints and subscriptions in SQLite"
requires-python = ">=3.10"
keywords = ["blockchain", "subscription", "websocket", "json-rpc", "sqlite"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Internet",
]
dependencies = [
    "websocket-client",
]

[project.optional-dependencies]
test = [
    "pytest",
    "websockets",
]

[tool.hatch.build.targets.wheel]
packages = ["extinitiator"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
