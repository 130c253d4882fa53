[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "beemflow"
version = "0.1.0"
description = "Declarative workflow runtime: flow models, step execution with pause and resume, an in-process event bus, MCP server management and Mermaid graph export."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "workflow",
    "flow",
    "automation",
    "orchestration",
    "event-bus",
    "mcp",
    "mermaid",
]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["beemflow"]

[tool.pytest.ini_options]
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
