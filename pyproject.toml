[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vdbops"
version = "0.1.0"
description = "Reconciliation logic for a Vertica database on Kubernetes: pod facts, restarts, revives and status roll-up."
requires-python = ">=3.10"
dependencies = []
keywords = ["vertica", "kubernetes", "operator", "reconcile", "statefulset", "admintools"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vdbops"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
