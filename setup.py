from setuptools import setup, find_packages

setup(
    name="mesflow",
    version="1.0.0",
    description="Workstation session and workflow execution engine for manufacturing execution",
    author="MesFlow Developers",
    packages=find_packages(include=["mesflow", "mesflow.*"]),
    include_package_data=True,
    install_requires=[
        "fastapi>=0.115.0",
        "uvicorn>=0.34.0",
        "pydantic>=2.11.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "httpx>=0.28.0",
        "prometheus-client>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.3.0",
            "pytest-asyncio>=0.26.0",
            "pytest-cov>=4.1.0",
            "aiosqlite>=0.20.0",
        ],
        "dev": [
            "pytest>=8.3.0",
            "pytest-asyncio>=0.26.0",
            "pytest-cov>=4.1.0",
            "aiosqlite>=0.20.0",
            "black>=23.3.0",
            "mypy>=1.9.0",
            "ruff>=0.1.0",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    entry_points={
        "console_scripts": [
            "mesflow=mesflow.cli:main",
        ],
    },
)
