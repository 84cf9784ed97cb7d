"""Setup script for the PlanForge package."""

from setuptools import setup, find_packages

setup(
    name="planforge",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "python-dotenv>=1.0",
        "structlog>=24.1",
        "httpx>=0.27",
        "tenacity>=8.2",
        "prometheus-client>=0.20",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
    ],
    extras_require={
        "test": ["pytest>=8.0", "pytest-asyncio>=0.23"],
    },
    entry_points={"console_scripts": ["planforge=planforge.cli:main"]},
    description="PlanForge - goal decomposition planner with DAG scheduling",
    author="PlanForge Team",
)
