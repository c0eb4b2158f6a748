"""
ChainEquity event indexer: projects cap-table contract events into SQL
"""

from setuptools import find_packages, setup

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

with open("requirements.txt", encoding="utf-8") as f:
    requirements = f.read().splitlines()

setup(
    name="chainequity",
    version="0.1.0",
    description="ChainEquity cap-table event indexer",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["chainequity", "chainequity.*"]),
    package_data={
        "": ["../requirements.txt"],
    },
    install_requires=requirements,
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "chainequity-indexer=chainequity.__main__:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
