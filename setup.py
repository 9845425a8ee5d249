# Copyright (c) Meta Platforms, Inc. and affiliates
import os
import subprocess
from typing import Dict

from setuptools import find_packages, setup


# Package name
package_name = "meshpipe"

# Version information
cwd = os.path.dirname(os.path.abspath(__file__))
version_txt = os.path.join(cwd, "version.txt")
with open(version_txt, "r") as f:
    version = f.readline().strip()

try:
    sha = (
        subprocess.check_output(["git", "rev-parse", "HEAD"], cwd=cwd)
        .decode("ascii")
        .strip()
    )
except Exception:
    sha = "Unknown"

if os.getenv("BUILD_VERSION"):
    version = os.getenv("BUILD_VERSION", version)
elif os.getenv("VERSION_NO_GIT", "0") == "1":
    pass
elif sha != "Unknown":
    version += "+" + sha[:7]


def write_version_file():
    version_path = os.path.join(cwd, "meshpipe", "version.py")
    with open(version_path, "w") as f:
        f.write("__version__ = '{}'\n".format(version))
        f.write("git_version = {}\n".format(repr(sha)))


# Package requirements
requirements = [
    "torch>=2.1.0",
    "packaging>=21.3",
]

extras: Dict = {
    "test": [
        "pytest",
        # torch.testing._internal.common_distributed requires "expecttest"
        "expecttest",
        # torch.testing._internal.common_utils imports numpy
        "numpy",
    ],
}


long_description = """
meshpipe executes a computation graph partitioned into stages, each pinned to
a mesh of devices. Every rank runs the same graph: stages owned by the local
device are computed, the others produce shape-only placeholders, and values
crossing from one mesh to another are lowered into point-to-point transfers.
"""


if __name__ == "__main__":
    write_version_file()

    setup(
        # Metadata
        name=package_name,
        version=version,
        author="meshpipe Team",
        description="Multi-device pipeline execution for PyTorch",
        license="BSD",
        # Package info
        packages=find_packages(include=["meshpipe", "meshpipe.*"]),
        python_requires=">=3.8",
        install_requires=requirements,
        extras_require=extras,
        long_description=long_description,
        long_description_content_type="text/markdown",
    )
