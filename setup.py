"""Setup script for the surveillance sync package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="surveillance-sync",
    version="1.0.0",
    description="Vector-borne disease surveillance - LabWare, NEDSS and ArboNET sync core",
    author="Surveillance Data Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["surveillance*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "pymssql",
        "redis",
        "minio",
        "requests",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis[lua]",
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
            "surveillance-worker=surveillance.entrypoints.redis_eventconsumer:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
