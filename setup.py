"""Setup script for Source Sync."""

from setuptools import setup, find_packages

setup(
    name="source-sync",
    version="1.0.0",
    description="Local agent that keeps file, environment and HTTP sources live for UI and WebSocket consumers",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    author="Source Sync contributors",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "watchdog>=3.0.0",
        "aiohttp>=3.9.0",
        "websockets>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "source-sync=source_sync.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: No Input/Output (Daemon)",
        "Intended Audience :: Developers",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Framework :: AsyncIO",
        "Topic :: Utilities",
    ],
)
