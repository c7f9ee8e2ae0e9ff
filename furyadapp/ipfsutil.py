"""Helpers for turning IPFS URIs into fetchable gateway URLs."""

IPFS_SCHEME = "ipfs://"
IPFS_GATEWAY = "https://nftstorage.link/ipfs/"


def ipfs_uri_to_url(ipfs_uri: str) -> str:
    """Return a gateway URL for an ``ipfs://`` URI; any other URI is returned as is."""
    if not ipfs_uri.startswith(IPFS_SCHEME):
        return ipfs_uri
    return IPFS_GATEWAY + ipfs_uri[len(IPFS_SCHEME):]