"""Setup script for the booking core."""

from setuptools import setup, find_packages

setup(
    name="booking-core",
    version="0.1.0",
    description="Travel booking core: booking lifecycle, payment ledger and gateway reconciliation",
    author="Njeyali Travel Engineering",
    python_requires=">=3.11",
    packages=find_packages(include=["booking_core", "booking_core.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
