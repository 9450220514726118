[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rdmashareddp"
version = "1.0.0"
description = "Kubernetes device plugin that shares RDMA devices between pods"
requires-python = ">=3.10"
keywords = ["kubernetes", "device-plugin", "rdma", "infiniband", "cdi", "kubelet", "grpc"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Clustering",
]
dependencies = [
    "grpcio",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
rdma-shared-dev-plugin = "rdmashareddp.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["rdmashareddp"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
