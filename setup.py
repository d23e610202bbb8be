"""Setup script for the agentcall package."""

from setuptools import setup, find_packages

setup(
    name="agentcall",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "httpx>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "prometheus-client>=0.20",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "pytest-httpx>=0.30",
        ],
    },
    description="agentcall - uniform task execution across MCP and A2A agents",
    author="agentcall Team",
)
