"""
Ingestion engine for the Soroban attestation registry
"""

from setuptools import find_packages, setup

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

with open("requirements.txt", encoding="utf-8") as f:
    requirements = f.read().splitlines()

with open("requirements-test.txt", encoding="utf-8") as f:
    test_requirements = f.read().splitlines()

setup(
    name="registry-indexer",
    version="0.0.1",
    description="Ingestion engine for the Soroban attestation registry",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["registry_indexer", "registry_indexer.*"]),
    package_data={
        "": ["../requirements.txt", "../requirements-test.txt"],
    },
    install_requires=requirements,
    extras_require={"test": test_requirements},
    entry_points={
        "console_scripts": ["registry-indexer=registry_indexer.app:main"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
