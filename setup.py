"""
TokenWatch - Setup Configuration
Token risk & liquidity aggregation service with realtime push
"""

from setuptools import setup, find_packages
import os

# Read the README file
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Read requirements
def read_requirements(file):
    """Read requirements from file"""
    if os.path.exists(file):
        with open(file, 'r') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    return []

setup(
    name="tokenwatch",
    version="1.0.0",
    author="TokenWatch Team",
    description="Token risk & liquidity aggregation engine with multi-source fetching and realtime push",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Office/Business :: Financial :: Investment",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Framework :: AsyncIO",
    ],
    packages=find_packages(exclude=["tests*", "docs*", "scripts*"]),
    python_requires=">=3.11",
    install_requires=read_requirements("requirements.txt"),
    extras_require={
        "dev": read_requirements("test-requirements.txt"),
    },
    entry_points={
        "console_scripts": [
            "tokenwatch=tokenwatch.main:main",
        ],
    },
    zip_safe=False,
    keywords=[
        "cryptocurrency", "dex", "defi", "solana", "dexscreener",
        "risk", "liquidity", "socketio",
    ],
)
