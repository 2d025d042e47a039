from setuptools import setup, find_packages

setup(
    name="offerquota",
    version="0.1.0",
    packages=find_packages(include=["offerquota", "offerquota.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg",
        "pydantic>=2",
        "pydantic-settings>=2.7",
        "typing_extensions",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "aiosqlite",
            "httpx",
        ],
    },
)
