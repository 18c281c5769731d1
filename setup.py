# PRD: Project Setup Configuration
# Reference: docs/ARCHITECTURE.md

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="citadel-risk",
    version="0.1.0",
    author="Citadel Archer Team",
    description="Threat-intelligence driven dynamic risk core: feeds, correlation, scoring, lifecycle",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/citadel-risk",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Information Technology",
        "Topic :: Security",
        "License :: Other/Proprietary License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.11",
    install_requires=[
        "structlog>=24.1.0",
        "httpx>=0.26.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.5.0",
        "APScheduler>=3.10,<4",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "citadel-risk=citadel_risk.__main__:main",
        ],
    },
)
