"""Proxy pool package — rotation, health tracking and quarantine."""

from scrape_engine.proxy.manager import ProxyPoolManager, load_proxy_file
from scrape_engine.proxy.types import ProxyEndpoint, ProxyHealth

__all__ = ["ProxyEndpoint", "ProxyHealth", "ProxyPoolManager", "load_proxy_file"]
