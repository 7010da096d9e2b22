"""
Setup script for notedrift.

notedrift is a batch analytics engine for a personal note corpus. It reads
notes, their embeddings and their edit history, and maintains derived
tables describing how the author's thinking drifts over time:

1. Drift events - significant or cluster-crossing edits
2. Cluster dynamics - daily centroid, cohesion and stability snapshots
3. Influence graph - which drifted notes pulled on which neighbours
4. Direction, timeline and cluster identity reports

The 'notedrift' command exposes every rebuild as a scheduler-friendly job.
"""

from setuptools import find_packages, setup

setup(
    name="notedrift",
    version="1.0.0",
    description="Semantic drift and concept-influence analytics for note corpora",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config", "main"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # Numerics
        "numpy>=1.24.0",
        "scipy>=1.10.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "notedrift=src.cli.main:run",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Text Processing",
    ],
    keywords="notes embeddings semantic-drift analytics cli",
)
