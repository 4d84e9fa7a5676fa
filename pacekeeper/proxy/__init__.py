"""Proxy management package — scored pool, sources, and validation probes."""

from pacekeeper.proxy.pool import ProxyPool
from pacekeeper.proxy.sources import FileProxySource, RemoteProxySource, StaticProxySource
from pacekeeper.proxy.types import ProxyRecord

__all__ = [
    "FileProxySource",
    "ProxyPool",
    "ProxyRecord",
    "RemoteProxySource",
    "StaticProxySource",
]
