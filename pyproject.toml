[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "staybook"
version = "0.1.0"
description = "Homestay booking back end: orders, third-party payments, identity tokens and message queues"
requires-python = ">=3.10"
keywords = ["homestay", "booking", "orders", "payments", "jwt"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Office/Business",
]
dependencies = [
    "pyjwt",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["staybook"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
