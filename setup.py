"""Setup script for hashi-up"""

from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="hashi-up",
    version="0.1.0",
    author="hashi-up",
    description="Install and configure HashiCorp Consul on local or remote machines",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"hashiup": "src"},
    packages=["hashiup"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Installation/Setup",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.11",
    install_requires=[
        "pyyaml",
        "asyncssh",
        "httpx",
        "cryptography",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "hashi-up=hashiup.cli:main",
        ],
    },
)
