"""
TreeVault setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="treevault",
    version="1.0.0",
    description="TreeVault — folder hierarchy metadata and access control",
    packages=find_packages(include=["treevault", "treevault.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "treevault=treevault.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
)
