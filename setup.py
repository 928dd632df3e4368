"""Setup configuration for List Builder."""

from setuptools import setup

setup(
    name="list_builder",
    version="1.0.0",
    description="List Builder - Recruitment Lead List-Building Job Orchestrator",
    py_modules=["list_builder", "log_capture"],
    python_requires=">=3.9",
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-xdist>=3.5.0",
            "pytest-timeout>=2.2.0",
        ],
    },
)
