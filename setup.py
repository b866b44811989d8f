"""Setup script for study-workflow-engine package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="study-workflow-engine",
    version="1.0.0",
    description="Study workflow and assignment engine for radiology reporting",
    author="Study Workflow Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["study_workflow*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
        "requests",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "study-workflow-ingestion=study_workflow.entrypoints.redis_eventconsumer:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
