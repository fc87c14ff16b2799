"""Exceptions raised while forwarding DNS queries to a DoH upstream."""
from typing import Optional


class DohForwarderError(Exception):
	"""Base class for all DNS over HTTPS forwarder errors."""


class BindError(DohForwarderError, OSError):
	"""The UDP listening socket could not be bound."""


class SocketReadError(DohForwarderError, OSError):
	"""Reading a datagram from the listening socket failed."""


class EncodingError(DohForwarderError, ValueError):
	"""A DNS query could not be encoded into an upstream HTTP request."""


class UpstreamError(DohForwarderError, ConnectionError):
	"""The upstream DoH server did not produce a usable answer."""


class UpstreamTransportError(UpstreamError):
	"""The HTTP request never completed (connection, TLS or timeout failure)."""


class UpstreamStatusError(UpstreamError):
	"""The upstream DoH server answered with a non 200 HTTP status."""

	def __init__(self, message: str, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.status_code = status_code


class BodyReadError(UpstreamError):
	"""The upstream HTTP response body could not be read in full."""


class CacheHeaderError(DohForwarderError, ValueError):
	"""The upstream response carries no usable cache lifetime."""


class CacheHeaderMissing(CacheHeaderError):
	"""The Cache-Control header is absent or empty."""


class CacheHeaderMalformed(CacheHeaderError):
	"""The Cache-Control header has no valid max-age directive."""
