"""
Setup script for PixelMint.

This script handles the installation and packaging of the PixelMint generation core.
"""

from setuptools import setup, find_packages

# Read README
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Read requirements
def read_requirements(filename):
    with open(filename, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]

install_requires = read_requirements("requirements.txt")

setup(
    name="pixelmint",
    version="1.0.0",
    author="PixelMint Team",
    author_email="team@pixelmint.dev",
    description="Provider failover, rate limiting, budget control and caching for NFT art generation",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Graphics",
        "Framework :: AsyncIO",
    ],
    python_requires=">=3.9",
    install_requires=install_requires,
    extras_require={
        "dev": read_requirements("requirements-dev.txt"),
        "build": ["build", "twine"],
    },
    zip_safe=False,
    keywords="nft image-generation rate-limiting failover budget cache",
)
