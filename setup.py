"""
Setup script for mastery-path.

Mastery Path is the retention and progression core of a mastery-based
learning platform. It decides:

1. When a learner is re-tested on an objective (spaced repetition)
2. Whether lessons and units are mastered (conjunctive progress evaluation)
3. How to tune schedules from performance (retention optimizer)
4. Which learning gaps explain repeated failure (gap analyzer)

The 'mastery' command is a thin CLI over the retention scheduler.
"""

from setuptools import find_packages, setup

setup(
    name="mastery-path",
    version="1.0.0",
    description="Spaced retention scheduling, mastery evaluation and learning gap analysis",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
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
            "mastery=src.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning spaced-repetition mastery education assessment",
)
