"""
Setup configuration for event-autoprint package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="event-autoprint",
    version="0.1.0",
    description="Automatically print event attendee lists shortly before each event starts",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(include=["autoprint", "autoprint.*"]),

    # Dependencies
    install_requires=[
        "requests>=2.31.0",
        "apscheduler>=3.10,<4",
        "sqlalchemy>=2.0",
        "python-dotenv>=1.0.0",
        "psutil>=5.9.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.9",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "autoprint=autoprint.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: Office/Business :: Scheduling",
        "Topic :: Printing",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="events attendees printing scheduler apscheduler",

    # Include package data
    include_package_data=True,
)
