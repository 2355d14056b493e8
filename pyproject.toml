[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ocmregistration"
version = "0.1.0"
description = "Managed cluster registration helpers: client certificate checks, feature gates, status updates and RBAC clean-up"
requires-python = ">=3.10"
keywords = ["kubernetes", "cluster", "registration", "certificates", "feature-gates", "rbac"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]
dependencies = [
    "cryptography",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "cryptography",
]

[tool.hatch.build.targets.wheel]
packages = ["ocmregistration"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
