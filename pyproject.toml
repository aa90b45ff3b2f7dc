[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "xfplstore"
version = "0.1.0"
description = "Local SQLite store with full-text search and typed tables for synced fantasy football API data"
requires-python = ">=3.10"
dependencies = []
keywords = ["sqlite", "fts5", "cache", "sync", "fantasy-football"]
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

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["xfplstore"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
