"""
flowfolders setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="flowfolders",
    version="1.0.0",
    description="flowfolders — Folder permission engine for workflow automation",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "flowfolders=flowfolders.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "networkx>=3.2",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
)
