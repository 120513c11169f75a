[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "machkit"
version = "0.1.0"
description = "Read, inspect and edit Mach-O binaries, FAT containers and their code signatures"
requires-python = ">=3.10"
dependencies = []
keywords = ["mach-o", "fat", "universal binary", "code signature", "codedirectory", "cdhash"]
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
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["machkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
