"""
Setup script for Media Job Worker

A queue-driven media pipeline worker with per-file checkpointing, resumable
stages and best-effort status telemetry.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Media Job Worker

    Consumes "new media" jobs from a queue and takes them through fetch,
    transform and publish stages, resuming from per-file checkpoints after
    crashes and redeliveries.
    """

setup(
    name="media-job-worker",
    version="1.0.0",
    description="Resumable fetch, transcode and publish pipeline worker for media jobs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Video :: Conversion",
        "Topic :: System :: Distributed Computing",
    ],
    keywords="media pipeline, transcoding, job queue, checkpointing, async",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.9",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",
        "psutil>=5.8.0",

        # Additional async and networking
        "aiofiles>=23.1.0",
        "httpx>=0.24.0",
        "redis>=5.0.1",
        "minio>=7.1.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.5.0",

        # Monitoring and health
        "prometheus-client>=0.17.0",
        "fastapi>=0.95.0",
        "uvicorn>=0.20.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "media-job-worker=media_job_worker.cli.main:main",
            "mjw=media_job_worker.cli.main:main",
        ],
    },
)
