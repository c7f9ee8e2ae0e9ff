[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "furyadapp"
version = "0.1.0"
description = "Indexer for NFT marketplace, name service, social feed and DAO contract activity, with price and URL helpers"
requires-python = ">=3.10"
keywords = ["indexer", "nft", "marketplace", "cosmwasm", "dao", "prices", "sqlalchemy"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Office/Business :: Financial",
]
dependencies = [
    "sqlalchemy>=2.0",
    "requests>=2.28",
    "cachetools>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["furyadapp"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
