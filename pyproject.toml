[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "openprio_api"
version = "0.1.0"
description = "HTTP API that registers devices and vehicles as MQTT clients and issues their credentials"
requires-python = ">=3.10"
keywords = ["mqtt", "registration", "acl", "bcrypt", "api", "flask"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Framework :: Flask",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "flask",
    "sqlalchemy",
    "bcrypt",
    "cachetools",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
openprio-api = "openprio_api.app:main"

[tool.hatch.build.targets.wheel]
packages = ["openprio_api"]

[tool.pytest.ini_options]
addopts = "-ra"
