#!/usr/bin/env python3
"""
Setup configuration for the debt tracker backend package
"""

from setuptools import setup, find_namespace_packages

setup(
    name="debt-tracker-backend",
    version="1.0.0",
    description="Debt Tracker Backend - multi-provider liability aggregation",
    packages=find_namespace_packages(include=["utils", "utils.*", "routes", "routes.*"]),
    py_modules=["api_server"],
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        "pydantic>=2.0.0",
        "plaid-python>=20.0.0",
        "supabase>=2.0.0",
        "httpx>=0.25.0",
        "python-dotenv>=1.0.0",
        "python-decouple>=3.8",
        "PyJWT>=2.8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
)
