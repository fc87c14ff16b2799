import array
import base64
import itertools
import logging
import statistics
import time
from types import TracebackType
from typing import ClassVar, Iterator, NamedTuple, Optional, Type

import httpx

from .errors import BodyReadError, EncodingError, UpstreamStatusError, UpstreamTransportError

# MIME type of a wireformat DNS message carried over HTTPS
MIME_TYPE = 'application/dns-message'

SUPPORTED_METHODS = ('GET', 'POST')
SUPPORTED_SCHEMES = ('https', 'http')


class UpstreamResponse(NamedTuple):
	body: bytes
	headers: httpx.Headers


class DohRequestEncoder:
	"""Encodes wireformat DNS queries into DoH HTTP requests for one upstream url.

	Notes:
		Using DNS over HTTPS GET and POST formats as described here:
		https://datatracker.ietf.org/doc/html/rfc8484
		https://developers.cloudflare.com/1.1.1.1/dns-over-https/wireformat/
	"""

	def __init__(self, url: str, method: str = 'GET') -> None:
		self.method = method.upper()

		if self.method not in SUPPORTED_METHODS:
			raise EncodingError(f'HTTP method not implemented: {method}')

		try:
			self.url = httpx.URL(url)
		except (httpx.InvalidURL, TypeError) as exc:
			raise EncodingError(f'malformed upstream url {url!r} - {exc}')

		if self.url.scheme not in SUPPORTED_SCHEMES or not self.url.host:
			raise EncodingError(f'upstream url {url!r} must be an absolute http(s) url')

	def encode(self, query: bytes) -> httpx.Request:
		"""Build the HTTP request that carries a DNS query.

		Params:
			query - A wireformat DNS query packet.

		Returns:
			An httpx request for the upstream DoH server.
		"""
		if self.method == 'POST':
			return self.encode_post(query)

		return self.encode_get(query)

	def encode_post(self, query: bytes) -> httpx.Request:
		headers = {
			'accept': MIME_TYPE,
			'content-type': MIME_TYPE,
			'content-length': str(len(query)),
		}

		return httpx.Request('POST', self.url, headers=headers, content=bytes(query))

	def encode_get(self, query: bytes) -> httpx.Request:
		# Standard (padded) base64, percent-encoded into the query string by httpx
		encoded = base64.b64encode(query).decode()
		headers = {
			'accept': MIME_TYPE,
			'content-type': MIME_TYPE,
		}

		return httpx.Request('GET', self.url.copy_merge_params({'dns': encoded}), headers=headers)


class DohUpstreamClient:
	"""Sends encoded DNS queries to an upstream DoH server and tracks its metadata."""

	RTT_WINDOW_SIZE: ClassVar[int] = 10
	SESSION_LIMITS: ClassVar[httpx.Limits] = httpx.Limits(max_keepalive_connections=4, max_connections=32, keepalive_expiry=60.0)

	def __init__(self,
		host: str,
		timeout: Optional[float] = 5.0,
		http2: bool = True,
		transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
		self.host = host
		self.queries = 0
		self.answers = 0
		self._rtts = array.array('d', [0.0])
		self._rtts_index: Iterator[int] = itertools.cycle(range(self.RTT_WINDOW_SIZE))
		self.session = httpx.AsyncClient(
			limits=self.SESSION_LIMITS,
			timeout=httpx.Timeout(timeout),
			http2=http2,
			transport=transport)

	async def __aenter__(self) -> 'DohUpstreamClient':
		return self

	async def __aexit__(self,
		exc_type: Optional[Type[BaseException]],
		exc_val: Optional[BaseException],
		exc_tb: Optional[TracebackType]) -> None:
		await self.aclose()

	@property
	def avg_rtt(self) -> float:
		"""The average rtt or latency (in seconds) for requests to this upstream DoH server."""
		return statistics.fmean(self._rtts)

	def add_rtt_sample(self, rtt: float) -> None:
		"""Add a new rtt sample to help compute the average rtt for this upstream DoH server."""
		i = next(self._rtts_index)
		self._rtts[i:i+1] = array.array('d', [float(rtt)])

	def get_stats(self) -> str:
		"""Returns a formatted string of statistics for this upstream server."""
		return f'{self.host} (rtt: {self.avg_rtt:.3f} s, queries: {self.queries}, answers: {self.answers})'

	async def asend(self, request: httpx.Request) -> UpstreamResponse:
		"""Send a DoH request and wait for the complete response.

		Params:
			request - An encoded DoH request.

		Returns:
			The wireformat DNS answer packet and the HTTP response headers.

		Notes:
			Failures are never retried, the DNS client is expected to retry
			on its own.
		"""
		self.queries += 1
		start = time.monotonic()

		# Send HTTP request to upstream DoH server and wait for the response headers
		try:
			response = await self.session.send(request, stream=True)
		except httpx.HTTPError as exc:
			raise UpstreamTransportError(f'DNS query to DoH server {self.host} failed due to network errors - {exc!r}') from exc

		try:
			# Reject abnormal HTTP status codes without reading the body
			if response.status_code != httpx.codes.OK:
				raise UpstreamStatusError(
					f'received HTTP error status from DoH server {self.host} ({response.status_code})',
					response.status_code)

			try:
				answer = await response.aread()
			except (httpx.HTTPError, httpx.StreamError) as exc:
				raise BodyReadError(f'failed reading answer from DoH server {self.host} - {exc!r}') from exc

		finally:
			await response.aclose()

		self.add_rtt_sample(time.monotonic() - start)
		self.answers += 1

		return UpstreamResponse(answer, response.headers)

	async def aclose(self) -> None:
		"""Close any open connections to the upstream DoH server."""
		await self.session.aclose()
