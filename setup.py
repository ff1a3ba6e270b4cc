"""
Budget Sync - Setup Configuration
"""
from setuptools import setup, find_packages
from pathlib import Path

# Read README
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name="budget-sync",
    version="1.0.0",
    author="Andrew",
    description="Scheduled budget file sync: column mapping, validation and ledger reconciliation",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "psycopg2-binary>=2.9.9",
        "python-dotenv>=1.0.0",
        "rapidfuzz>=3.0.0",
        "openpyxl>=3.1.0",
        "xlrd>=2.0.1",
        "paramiko>=3.0.0",
        "boto3>=1.28.0",
        "APScheduler>=3.10,<4",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "black>=23.12.1",
            "flake8>=7.0.0",
            "mypy>=1.8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "budget-sync-init=budget_sync.cli.init_db:main",
            "budget-sync=budget_sync.cli.sync:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Topic :: Office/Business :: Financial",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    include_package_data=True,
    package_data={
        "budget_sync": [
            "db/*.sql",
        ],
    },
)
