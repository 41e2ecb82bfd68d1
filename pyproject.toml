[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "simpleos"
version = "0.1.0"
description = "A small kernel modelled in software: serial-style console, virtio-style block device, page allocator, FAT16 volume and a cooperative scheduler"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "fat16", "virtio", "scheduler", "page-allocator", "teaching"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
simpleos = "simpleos.kernel:main"

[tool.hatch.build.targets.wheel]
packages = ["simpleos"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
