"""
Setup script for OpsConnect
"""
from setuptools import setup, find_packages

setup(
    name="opsconnect",
    version="0.1.0",
    packages=find_packages(include=["opsconnect", "opsconnect.*"]),
    install_requires=[
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "pydantic>=2.8.0",
        "python-dotenv>=1.0.1",
        "httpx>=0.27.0",
        "cryptography>=42.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    description="OpsConnect - Connectors and webhook triggers for operational APIs",
    author="OpsConnect Team",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
