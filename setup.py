"""Setup script for the LIMS lifecycle engine following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="lims-lifecycle",
    version="1.0.0",
    description="Laboratory order, specimen and result lifecycle engine",
    author="Lab Data Product Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["lims*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
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
