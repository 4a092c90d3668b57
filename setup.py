"""
Setup script for insight-dedup.

Insight Dedup groups near-duplicate insights extracted from source
documents into reviewable merge proposals:

1. Embedding backfill - Vectors for every raw insight (OpenAI API or local model)
2. Clustering - Merge-into-existing suggestions and new groups by cosine similarity
3. Review - Human approval turns a proposal into one unique insight

The 'dedup' command is the operator entry point; the HTTP API is served
by uvicorn (see main.py).
"""

from setuptools import find_packages, setup

setup(
    name="insight-dedup",
    version="1.0.0",
    description="Semantic deduplication and clustering of extracted insights",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config", "main"],
    python_requires=">=3.11",
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
        # HTTP
        "requests>=2.28.0",
        # Logging
        "loguru>=0.7.0",
        # Similarity
        "numpy>=1.24.0",
        # API
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "httpx>=0.25.0",  # fastapi.testclient
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
        "local-ai": [
            "sentence-transformers>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "dedup=insight_dedup.cli.main:app",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Framework :: FastAPI",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Text Processing :: Linguistic",
    ],
    keywords="deduplication embeddings clustering insights review",
)
