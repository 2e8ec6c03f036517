[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "checkpointkit"
version = "0.1.0"
description = "Asynchronous checkpoint storage for stateful graph workflows, with in-memory, SQLite and Redis backends"
requires-python = ">=3.10"
keywords = ["checkpoint", "persistence", "workflow", "graph", "asyncio", "sqlite", "redis"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: Database",
]
dependencies = [
    "aiosqlite>=0.19",
    "redis>=5.0.1",
    "msgpack>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["checkpointkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
