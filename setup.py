#!/usr/bin/env python3
"""Setup script for the R language server session manager."""

import sys

from setuptools import find_packages, setup

# Read version from the package
with open("rlsp/__init__.py") as f:
    for line in f:
        if line.startswith("__version__"):
            version = line.split("=")[1].strip().strip('"').strip("'")
            break
    else:
        version = "0.0.0"

# Read long description from README
with open("README.md") as f:
    long_description = f.read()

# Display warning about external dependencies
print("""
IMPORTANT: This package launches R, which cannot be installed via pip:
- R itself must be on PATH (or configured with r.rpath)
- The 'languageserver' R package must be installed: install.packages("languageserver")

Please refer to the README.md for complete installation instructions.
""", file=sys.stderr)

setup(
    name="rlsp",
    version=version,
    description="Workspace-scoped R language server launcher and session manager",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pygls>=1.1.0,<2.0",
        "lsprotocol>=2023.0.0",
        "pydantic>=2.0.0",
        "click>=8.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "rlsp=rlsp.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
)
