[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cqhub"
version = "0.1.0"
description = "Provider plugin registry with signed-checksum verification, and SQL policy execution over DB-API connections."
requires-python = ">=3.10"
keywords = [
    "cloud",
    "inventory",
    "policy",
    "sql",
    "provider",
    "registry",
    "compliance",
    "openpgp",
    "checksum",
]
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
    "Topic :: System :: Systems Administration",
    "Topic :: Database",
    "Typing :: Typed",
]
dependencies = [
    "requests>=2.25",
    "packaging>=21.0",
    "termcolor>=2.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["cqhub"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 120
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
