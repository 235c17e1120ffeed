[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mongoshake"
version = "0.1.0"
description = "Replication building blocks for MongoDB: namespace and oplog filters, orphan detection, oplog and change-stream readers, batching with disk spill, sync-mode selection and full-sync document reading and writing."
requires-python = ">=3.10"
keywords = ["mongodb", "replication", "oplog", "change-stream", "sync"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]
dependencies = [
    "pymongo",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["mongoshake"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
