[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "seriesfactory"
version = "0.1.0"
description = "Offline market-data series tooling: Renko multiplier calibration, sharded store layout helpers and backfill orchestration."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "renko",
    "calibration",
    "market-data",
    "backfill",
    "time-series",
    "sharding",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Financial and Insurance Industry",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Financial :: Investment",
    "Topic :: Scientific/Engineering :: Information Analysis",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
backfill-all = "seriesfactory.backfill:main"

[tool.hatch.build.targets.wheel]
packages = ["seriesfactory"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
