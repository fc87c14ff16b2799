"""A DNS over HTTPS forwarder with an in-memory answer cache."""
from .cache import Cache
from .listener import UdpResolverProtocol, WorkerPool
from .resolver import DohResolver
from .upstream import DohRequestEncoder, DohUpstreamClient

__version__ = '0.1.0'

__all__ = [
	'Cache',
	'DohRequestEncoder',
	'DohResolver',
	'DohUpstreamClient',
	'UdpResolverProtocol',
	'WorkerPool',
]
