"""
Civil Registry Form Filling Pipeline Setup

This file configures the installation and dependencies for the registry
document generation pipeline.
"""

from setuptools import setup, find_packages

# Read the README file for long description
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = "Civil Registry Form Filling Pipeline"

setup(
    name="civil-registry-form-filler",
    version="1.0.0",
    description="Field reconciliation and PDF form filling for civil registry documents",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["registry_filler", "registry_filler.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Office/Business",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        # PDF form handling
        "pypdf>=4.0.0",

        # Logging and configuration
        "loguru>=0.7.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "reportlab>=4.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "registry-filler=registry_filler.main:main",
        ],
    },
    zip_safe=False,
    keywords="civil registry, pdf forms, form filling, data reconciliation",
)
