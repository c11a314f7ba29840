from setuptools import setup, find_packages
import os
import logging

logger = logging.getLogger(__name__)

# Function to read requirements from requirements.txt
def parse_requirements(filename="requirements.txt"):
    """Load requirements from a pip requirements file."""
    try:
        with open(os.path.join(os.path.dirname(__file__), filename), 'r') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith("#")]
    except FileNotFoundError:
        logger.warning(f"Warning: {filename} not found. Proceeding without defined requirements.")
        return []

setup(
    name="tiris-backend",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config", "main"],
    install_requires=parse_requirements(),
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.27.0",
        ],
    },
    author="Tiris Team",
    description="Tiris trading backend: ledger, authentication and security core",
    long_description=open('README.md').read() if os.path.exists('README.md') else '',
    long_description_content_type='text/markdown',
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Intended Audience :: Developers",
        "Intended Audience :: Financial and Insurance Industry",
        "Topic :: Office/Business :: Financial :: Investment",
    ],
    python_requires=">=3.11",
    entry_points={
        'console_scripts': [
            'tiris-backend=main:main',
        ],
    },
)
