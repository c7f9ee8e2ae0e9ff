"""Index NFT marketplace, name service, social feed and DAO contract activity into a SQL database; includes price, collections cache and URL helpers."""

__version__ = "0.1.0"