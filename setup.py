"""Packaging information for outpost."""

import sys

import setuptools

from outpost.constants import RELAY_REQUIREMENTS, VERSION

if sys.version_info[:3] < (3, 8, 0):
    print("outpost requires Python 3.8 to run.")
    sys.exit(1)

install_requires = list(RELAY_REQUIREMENTS)

extras_require = {
    "dev": [
        "flake8>=3.7.9",
        "flake8-docstrings>=1.5.0",
        "flake8-import-order>=0.18.1",
        "black>=19.10b0",
        "mypy>=0.770",
        "pytest>=5.4.1",
        "pytest-cov>=2.8.1",
    ]
}


def _long_description():
    with open("README.md") as f:
        return f.read()


setuptools.setup(
    name="outpost",
    version=VERSION,
    description="Remote files and terminals through a relay deployed over ssh.",
    long_description=_long_description(),
    long_description_content_type="text/markdown",
    license="Apache",
    packages=setuptools.find_packages(exclude=["outpost.tests", "outpost.tests.*"]),
    entry_points={"console_scripts": ["outpost = outpost.__main__:main"]},
    install_requires=install_requires,
    extras_require=extras_require,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX",
        "Topic :: System :: Shells",
    ],
    python_requires=">=3.8",
)
