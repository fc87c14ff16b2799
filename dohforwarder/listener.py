import asyncio as aio
import logging
from asyncio import DatagramTransport, Queue, Task
from typing import List, Optional, Tuple

from .errors import BindError, SocketReadError
from .resolver import DohResolver, Peer

# Read buffer size for the UDP socket (DNS over UDP payload limit without EDNS0)
BUFFER_SIZE = 512

DEFAULT_WORKERS = 64
DEFAULT_QUEUE_SIZE = 1024

Datagram = Tuple[bytes, Peer, DatagramTransport]


class UdpResolverProtocol(aio.DatagramProtocol):
	"""Protocol that queues UDP DNS queries for a pool of resolver workers."""

	def __init__(self, queue: 'Queue[Datagram]') -> None:
		self.queue = queue
		self.transport: Optional[DatagramTransport] = None
		self.rejected = 0

	def connection_made(self, transport: DatagramTransport) -> None:
		self.transport = transport

	def datagram_received(self, data: bytes, peer: Peer) -> None:
		logging.debug(f'Got UDP DNS query from {peer}')

		if len(data) > BUFFER_SIZE:
			logging.debug(f'Truncating {len(data)} byte datagram from {peer} to {BUFFER_SIZE} bytes')
			data = data[:BUFFER_SIZE]

		# Reject the newest query when all workers are busy and the queue is full
		try:
			self.queue.put_nowait((data, peer, self.transport))
		except aio.QueueFull:
			self.rejected += 1
			logging.warning(f'Query queue is full, dropping UDP DNS query from {peer}')

	def error_received(self, exc: Exception) -> None:
		error = SocketReadError(f'UDP socket error - {exc!r}')
		logging.warning(str(error))


class WorkerPool:
	"""A fixed number of tasks resolving queued DNS queries."""

	def __init__(self, resolver: DohResolver, workers: int = DEFAULT_WORKERS, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
		if workers < 1:
			raise ValueError('worker pool must have at least one worker')

		self.resolver = resolver
		self.workers = workers
		self.queue: 'Queue[Datagram]' = aio.Queue(queue_size)
		self._tasks: List[Task] = []

	def start(self) -> None:
		"""Start the worker tasks on the running event loop."""
		for i in range(self.workers - len(self._tasks)):
			self._tasks.append(aio.create_task(self.awork()))

	async def awork(self) -> None:
		while True:
			query, peer, transport = await self.queue.get()

			try:
				await self.resolver.adispatch(query, peer, transport)
			except Exception as exc:
				logging.exception(f'UDP DNS query resolution encountered an error - {exc!r}')
			finally:
				self.queue.task_done()

	async def aclose(self) -> None:
		"""Cancel all worker tasks and wait for them to finish."""
		for task in self._tasks:
			task.cancel()

		await aio.gather(*self._tasks, return_exceptions=True)
		self._tasks.clear()


async def alisten(pool: WorkerPool, host: str, port: int) -> Tuple[DatagramTransport, UdpResolverProtocol]:
	"""Bind a UDP endpoint feeding the worker pool.

	Params:
		pool - The worker pool that resolves received queries.
		host - The address to listen on.
		port - The port to listen on.

	Returns:
		The UDP transport and protocol of the bound endpoint.
	"""
	loop = aio.get_running_loop()

	try:
		return await loop.create_datagram_endpoint(lambda: UdpResolverProtocol(pool.queue), local_addr=(host, port))
	except OSError as exc:
		raise BindError(f'failed binding UDP server to {host}#{port} - {exc}') from exc
