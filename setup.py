"""
CourseGen setuptools build script.

Usage:
    # Development (editable install):
    pip install -e ".[test]"

    # Run the test suite:
    python -m unittest discover -s tests
"""

from setuptools import setup

APP_NAME = "coursegen"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Transcript-to-course job orchestration engine",
    packages=[
        "coursegen",
        "coursegen.core",
        "coursegen.providers",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "coursegen=main:main",
        ],
    },
)
