"""
Setup configuration for the docmachine package.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="docmachine",
    version="0.1.0",
    author="docmachine Contributors",
    author_email="contributors@docmachine.example.com",
    description="An async ActiveRecord-style ODM for MongoDB built on Pydantic and motor",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/docmachine",
    package_dir={"": "src"},
    packages=find_packages("src"),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Database",
        "Framework :: AsyncIO",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "pytest-cov",
            "ruff",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "docmachine-scaffold=docmachine.scaffold:main",
        ],
    },
    project_urls={
        "Bug Reports": "https://github.com/yourusername/docmachine/issues",
        "Source": "https://github.com/yourusername/docmachine",
    },
)
