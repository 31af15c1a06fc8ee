from pathlib import Path

from setuptools import find_packages, setup

ROOT = Path(__file__).parent


def read_version() -> str:
    """Read ``__version__`` from the package without importing it."""
    init = ROOT / "token_aggregator" / "__init__.py"
    for line in init.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("__version__ not found")


setup(
    name="token-aggregator",
    version=read_version(),
    description="Multi-source token market data aggregator with a live update feed",
    packages=find_packages(include=["token_aggregator", "token_aggregator.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "redis>=5.0.1",
        "pydantic>=2.0",
        "orjson>=3.9",
        "psutil>=5.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "token-aggregator=token_aggregator.server:main",
        ],
    },
)
