"""Setup configuration for scholar-context."""
from setuptools import find_packages, setup

setup(
    name="scholar-context",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]) + ["models", "services"],
    py_modules=["db"],
    python_requires=">=3.11",
    install_requires=[
        "requests>=2.31.0",
        "qdrant-client>=1.9.0",
        "redis>=5.0.0",
        "sqlalchemy>=2.0.29",
        "pydantic>=2.7.0",
        "python-dotenv>=1.0.0",
        "rapidfuzz>=3.6.0",
    ],
    extras_require={
        "test": ["pytest>=8.0.0"],
    },
)
