"""Setup configuration for RecipeDB package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the contents of README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

# Read requirements from requirements.txt, splitting core from development
# dependencies on the section header comment.
core_requirements = []
dev_requirements = []
dev_section = False

with open(this_directory / "requirements.txt", "r", encoding="utf-8") as f:
    for line in f:
        line = line.strip()
        if not line:
            continue
        if line.startswith("#"):
            if "Development dependencies" in line:
                dev_section = True
            continue
        line = line.split("#")[0].strip()
        if dev_section:
            dev_requirements.append(line)
        else:
            core_requirements.append(line)

setup(
    name="recipedb",
    version="1.0.0",
    author="RecipeDB Team",
    description="Database administration, backup and monitoring toolkit for a recipe catalog",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Database",
        "Topic :: System :: Monitoring",
        "Topic :: System :: Archiving :: Backup",
    ],
    python_requires=">=3.9",
    install_requires=core_requirements,
    extras_require={
        "dev": dev_requirements,
        "test": dev_requirements,
    },
    entry_points={
        "console_scripts": [
            "recipedb=recipedb.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
    keywords=[
        "postgresql",
        "database",
        "backup",
        "monitoring",
        "migrations",
        "admin api",
    ],
)
