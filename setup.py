"""
Setup script for the fiscal-core NFSe library
"""

from setuptools import find_packages, setup

with open("README.md", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", encoding="utf-8") as fh:
    requirements = [
        line.strip() for line in fh if line.strip() and not line.startswith("#")
    ]

setup(
    name="fiscal-core",
    version="0.1.0",
    description="Brazilian NFSe core: national provider, catalog cache and result envelopes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages("src"),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.13",
        "Natural Language :: Portuguese (Brazilian)",
    ],
    python_requires=">=3.13",
    install_requires=requirements,
    extras_require={"test": ["pytest>=8.0"]},
)
