[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bsvbus"
version = "0.1.4"
description = "Bitcoin SV blockchain indexer with REST, GraphQL, WebSocket and Prometheus endpoints"
requires-python = ">=3.10"
keywords = ["bitcoin", "bsv", "indexer", "blockchain", "op_return", "graphql", "postgresql"]
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
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: Database :: Front-Ends",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "sqlalchemy>=2.0",
    "requests>=2.28",
    "pyzmq>=25.0",
    "backoff>=2.2",
    "aiohttp>=3.9",
    "python-dotenv>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
bsvbus = "bsvbus.server:main"

[tool.hatch.build.targets.wheel]
packages = ["bsvbus"]

[tool.hatch.build.targets.sdist]
include = ["bsvbus", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
