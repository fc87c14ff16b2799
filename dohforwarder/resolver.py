import asyncio as aio
import logging
from asyncio import DatagramTransport, Future
from typing import Dict, Tuple

from .cache import TRANSACTION_ID_SIZE, Cache, cache_key
from .errors import DohForwarderError, UpstreamError
from .upstream import DohRequestEncoder, DohUpstreamClient

Peer = Tuple[str, int]


class DohResolver:
	"""Resolves DNS queries from the cache or by forwarding them to a DoH upstream.

	Concurrent cache misses for the same question share a single upstream
	request unless coalescing is disabled.
	"""

	def __init__(self,
		cache: Cache,
		encoder: DohRequestEncoder,
		client: DohUpstreamClient,
		coalesce: bool = True) -> None:
		self.cache = cache
		self.encoder = encoder
		self.client = client
		self.coalesce = coalesce
		self.queries = 0
		self.answers = 0
		self.dropped = 0
		self.coalesced = 0
		self._inflight: Dict[bytes, Future] = {}

	def get_stats(self) -> str:
		"""Returns a formatted string of statistics for this resolver and its collaborators."""
		return (
			f'Statistics for resolver at 0x{id(self):x} (queries: {self.queries}, answers: {self.answers}, '
			f'dropped: {self.dropped}, coalesced: {self.coalesced}) {self.cache.get_stats()} '
			f'upstream {self.client.get_stats()}')

	async def adispatch(self, query: bytes, peer: Peer, transport: DatagramTransport) -> None:
		"""Resolve a DNS query and write the DNS answer back to the peer.

		Params:
			query - A wireformat DNS query packet.
			peer - The address the query was received from.
			transport - The UDP transport the query was received on.

		Notes:
			Failed queries are logged and dropped, no answer is sent and the
			DNS client is left to retry on its own.
		"""
		qid = bytes(query[:TRANSACTION_ID_SIZE]).hex()

		try:
			answer = await self.aresolve(query)
		except DohForwarderError as exc:
			self.dropped += 1
			logging.warning(f'Dropping query {qid} from {peer} - {exc}')
			return

		if transport.is_closing():
			self.dropped += 1
			logging.debug(f'Dropping answer {qid} for {peer}, transport is closed')
			return

		try:
			transport.sendto(answer, peer)
		except OSError as exc:
			self.dropped += 1
			logging.warning(f'Error writing answer {qid} to {peer} - {exc!r}')
			return

		self.answers += 1
		logging.debug(f'Replied to query {qid} from {peer} ({len(answer)} bytes sent)')

	async def aresolve(self, query: bytes) -> bytes:
		"""Resolve a DNS query.

		Params:
			query - A wireformat DNS query packet.

		Returns:
			A wireformat DNS answer packet carrying the transaction ID of the query.
		"""
		self.queries += 1

		answer = self.cache.get(query)
		if answer is not None:
			return answer

		if not self.coalesce:
			return await self.aforward(query)

		key = cache_key(query)
		pending = self._inflight.get(key)

		# Wait on the request already in flight for the same question
		if pending is not None:
			self.coalesced += 1
			logging.debug(f'Joining in-flight request for query {bytes(query[:TRANSACTION_ID_SIZE]).hex()}')
			answer = await aio.shield(pending)
			return b''.join([query[:TRANSACTION_ID_SIZE], answer[TRANSACTION_ID_SIZE:]])

		pending = aio.get_running_loop().create_future()
		self._inflight[key] = pending

		try:
			answer = await self.aforward(query)
		except DohForwarderError as exc:
			self._fail_pending(pending, exc)
			raise
		except BaseException:
			self._fail_pending(pending, UpstreamError('in-flight upstream request was abandoned'))
			raise
		else:
			pending.set_result(answer)
		finally:
			del self._inflight[key]

		return answer

	@staticmethod
	def _fail_pending(pending: Future, exc: BaseException) -> None:
		pending.set_exception(exc)
		# There may be no followers, mark the exception as retrieved
		pending.exception()

	async def aforward(self, query: bytes) -> bytes:
		"""Forward a DNS query upstream and cache the DNS answer."""
		qid = bytes(query[:TRANSACTION_ID_SIZE]).hex()
		request = self.encoder.encode(query)

		logging.debug(f'Sending query {qid} to {self.client.host} --->')
		response = await self.client.asend(request)
		logging.debug(f'Receiving answer {qid} from {self.client.host} <---')

		self.cache.add(query, response.body, response.headers)

		return response.body
