[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eventstore"
version = "0.1.0"
description = "Storage backends for Nostr events: in-memory, MySQL, LMDB and Elasticsearch, behind one interface"
requires-python = ">=3.10"
keywords = ["nostr", "relay", "events", "database", "storage", "lmdb", "mysql", "elasticsearch"]
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
    "Topic :: Database",
    "Typing :: Typed",
]
dependencies = [
    "lmdb",
    "pymysql",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["eventstore"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
