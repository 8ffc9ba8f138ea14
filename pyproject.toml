[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "skillrun"
version = "0.1.0"
description = "Step-by-step execution of agent-generated programs that suspend on external skill actions."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["agents", "skills", "execution", "interpreter", "event-sourcing", "asyncio"]
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
    "Topic :: Software Development :: Interpreters",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["skillrun"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
