[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clusterproxy"
version = "0.1.0"
description = "Building blocks for a Redis Cluster proxy: pooled buffers, an incremental RESP parser, a slow-command log and levelled logging"
requires-python = ">=3.10"
dependencies = []
keywords = ["redis", "redis-cluster", "proxy", "resp", "parser", "slowlog"]
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
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["clusterproxy"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
