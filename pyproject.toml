[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ekstester"
version = "0.1.0"
description = "Building blocks for EKS test runs: deployer options, node readiness watches, node metrics and infrastructure stack management"
requires-python = ">=3.10"
dependencies = []
keywords = ["eks", "kubernetes", "testing", "cloudformation", "nodes", "metrics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ekstester"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
