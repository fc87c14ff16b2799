import argparse
import asyncio as aio
import logging
from typing import List, Optional, Sequence

from .cache import Cache
from .errors import BindError, EncodingError
from .listener import DEFAULT_QUEUE_SIZE, DEFAULT_WORKERS, WorkerPool, alisten
from .resolver import DohResolver
from .upstream import DohRequestEncoder, DohUpstreamClient

DEFAULT_UPSTREAM = 'https://cloudflare-dns.com/dns-query'
DEFAULT_LISTEN_ADDRESS = '0.0.0.0'
DEFAULT_LISTEN_PORT = 5553
DEFAULT_HTTP_METHOD = 'GET'
DEFAULT_TIMEOUT = 5.0
DEFAULT_STATS_INTERVAL = 3600.0

LOG_FORMAT = '(%(asctime)s)[%(levelname)s] %(message)s'


async def amain(args: argparse.Namespace) -> None:
	# Setup DNS resolver to cache/forward queries and answers
	encoder = DohRequestEncoder(args.upstream, args.http_method)

	async with DohUpstreamClient(args.upstream, timeout=args.timeout, http2=args.http2) as client:
		resolver = DohResolver(Cache(), encoder, client, coalesce=args.coalesce)
		pool = WorkerPool(resolver, args.workers, args.queue_size)

		# Setup UDP server
		logging.info('Starting UDP server listening on %s#%d' % (args.listen_address, args.listen_port))
		transport, _ = await alisten(pool, args.listen_address, args.listen_port)
		pool.start()

		# Serve forever
		try:
			while True:
				await aio.sleep(args.stats_interval)
				logging.info(resolver.get_stats())

		finally:
			logging.info('Shutting down DNS over HTTPS forwarder')
			transport.close()
			await pool.aclose()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(prog='dohforwarder', description='Forward UDP DNS queries to a DNS over HTTPS server.')
	parser.add_argument('-u', '--upstream', default=DEFAULT_UPSTREAM,
						help='DNS over HTTPS server to forward DNS queries to (default: %(default)s)')
	parser.add_argument('-l', '--listen-address', default=DEFAULT_LISTEN_ADDRESS,
						help='address to listen on for DNS queries (default: %(default)s)')
	parser.add_argument('-p', '--listen-port', type=int, default=DEFAULT_LISTEN_PORT,
						help='port to listen on for DNS queries (default: %(default)s)')
	parser.add_argument('-m', '--http-method', default=DEFAULT_HTTP_METHOD, type=str.upper,
						help='request method used when sending DNS queries upstream, GET or POST (default: %(default)s)')
	parser.add_argument('-w', '--workers', type=int, default=DEFAULT_WORKERS,
						help='maximum number of DNS queries resolved concurrently (default: %(default)s)')
	parser.add_argument('-q', '--queue-size', type=int, default=DEFAULT_QUEUE_SIZE,
						help='maximum number of DNS queries waiting for a worker (default: %(default)s)')
	parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
						help='time to wait before giving up on an upstream request (default: %(default)s seconds)')
	parser.add_argument('--no-http2', dest='http2', action='store_false', default=True,
						help='disable HTTP/2 for upstream connections')
	parser.add_argument('--no-coalesce', dest='coalesce', action='store_false', default=True,
						help='send every cache miss upstream even if the same question is already in flight')
	parser.add_argument('--stats-interval', type=float, default=DEFAULT_STATS_INTERVAL,
						help='time between statistics log messages (default: %(default)s seconds)')
	parser.add_argument('-f', '--file', default=None,
						help='file to store logging output to (default: %(default)s)')
	parser.add_argument('-d', '--debug', action='store_true', default=False,
						help='enable debug logging and debugging on the internal asyncio event loop (default: %(default)s)')
	return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
	# Handle command line arguments
	args = parse_args(argv)

	# Setup logging
	log_level = 'DEBUG' if args.debug else 'INFO'
	logging.basicConfig(level=log_level, filename=args.file, format=LOG_FORMAT)
	logging.info('Starting DNS over HTTPS forwarder')
	logging.info('Args: %r' % (vars(args)))

	try:
		aio.run(amain(args), debug=args.debug)

	except (EncodingError, BindError, ValueError) as exc:
		logging.critical(f'DNS over HTTPS forwarder failed to start - {exc}')
		return 1

	except (KeyboardInterrupt, SystemExit):
		pass

	return 0
