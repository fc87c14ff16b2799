import hashlib
import logging
import re
import threading
import time
from typing import Callable, Dict, Mapping, NamedTuple, Optional

import httpx

from .errors import CacheHeaderError, CacheHeaderMalformed, CacheHeaderMissing

# Leading transaction ID of a DNS message, the only part of a query that
# differs between retransmissions of the same question
TRANSACTION_ID_SIZE = 2

CACHE_CONTROL = 'cache-control'
MAX_AGE = 'max-age'

# Delta-seconds ceiling, larger lifetimes are treated as this value (RFC 9111 1.2.2)
MAX_AGE_CEILING = 2 ** 31

DELTA_SECONDS = re.compile(r'[0-9]+')


def cache_key(query: bytes) -> bytes:
	"""Returns the cache key for a wireformat DNS query.

	Params:
		query - A wireformat DNS query packet.

	Returns:
		A SHA-256 digest of everything after the transaction ID.
	"""
	return hashlib.sha256(query[TRANSACTION_ID_SIZE:]).digest()


def parse_max_age(value: Optional[str]) -> int:
	"""Extract the max-age directive (in seconds) from a Cache-Control header value.

	Params:
		value - The Cache-Control header value, e.g. 'public, max-age=300'.

	Returns:
		The max-age lifetime in seconds.

	Notes:
		Directives are comma separated and may appear in any order, only
		the first max-age directive is considered and values above 2**31 are
		clamped to 2**31. Raises CacheHeaderMissing
		for an absent header and CacheHeaderMalformed when no valid max-age
		directive is present.
	"""
	if value is None or not value.strip():
		raise CacheHeaderMissing('Cache-Control header does not exist or is empty')

	for directive in value.split(','):
		name, sep, arg = directive.partition('=')

		if name.strip().lower() != MAX_AGE:
			continue

		arg = arg.strip().strip('"')
		if not sep or not DELTA_SECONDS.fullmatch(arg):
			raise CacheHeaderMalformed(f'invalid max-age directive in Cache-Control header {value!r}')

		# Compare lengths first, very long values exceed the int conversion limit
		arg = arg.lstrip('0') or '0'
		if len(arg) > len(str(MAX_AGE_CEILING)):
			return MAX_AGE_CEILING

		return min(int(arg), MAX_AGE_CEILING)

	raise CacheHeaderMalformed(f'no max-age directive in Cache-Control header {value!r}')


class CacheEntry(NamedTuple):
	reply: bytes
	expires_at: float


class Cache:
	"""A thread-safe DNS answer cache with lazy TTL based expiry.

	Entries are keyed by the query content without its transaction ID, so
	retransmissions and different clients asking the same question share
	one entry. Expired entries are only removed when looked up.
	"""

	def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
		self.clock = clock or time.time
		self.hits = 0
		self.misses = 0
		self.expired = 0
		self._entries: Dict[bytes, CacheEntry] = {}
		self._lock = threading.Lock()

	def __len__(self) -> int:
		with self._lock:
			return len(self._entries)

	def get(self, query: bytes) -> Optional[bytes]:
		"""Lookup the cached answer for a DNS query.

		Params:
			query - A wireformat DNS query packet.

		Returns:
			The cached wireformat DNS answer carrying the transaction ID of
			the given query, or None if there is no valid entry.
		"""
		key = cache_key(query)

		with self._lock:
			entry = self._entries.get(key)

			if entry is None:
				self.misses += 1
				return None

			if entry.expires_at <= self.clock():
				del self._entries[key]
				self.misses += 1
				self.expired += 1
				logging.debug(f'Cache entry {key.hex()[:16]} expired')
				return None

			self.hits += 1

		logging.debug(f'Found query {bytes(query[:TRANSACTION_ID_SIZE]).hex()} in cache')

		# Substitute the transaction ID of the incoming query
		return b''.join([query[:TRANSACTION_ID_SIZE], entry.reply[TRANSACTION_ID_SIZE:]])

	def add(self, query: bytes, reply: bytes, headers: Mapping[str, str]) -> bool:
		"""Cache a DNS answer for as long as the upstream Cache-Control header allows.

		Params:
			query - A wireformat DNS query packet.
			reply - The wireformat DNS answer packet for the query.
			headers - The upstream HTTP response headers.

		Returns:
			True if the answer was cached, False if the headers carried no
			usable max-age directive.
		"""
		try:
			ttl = parse_max_age(httpx.Headers(headers).get(CACHE_CONTROL))
		except CacheHeaderError as exc:
			logging.debug(f'Not caching answer - {exc}')
			return False

		key = cache_key(query)
		entry = CacheEntry(bytes(reply), self.clock() + ttl)

		with self._lock:
			self._entries[key] = entry

		logging.debug(f'Saved answer to cache {key.hex()[:16]} (ttl: {ttl} s)')
		return True

	def snapshot(self) -> Dict[bytes, CacheEntry]:
		"""Returns a copy of all entries that have not expired yet."""
		now = self.clock()

		with self._lock:
			return {key: entry for key, entry in self._entries.items() if entry.expires_at > now}

	def clear(self) -> None:
		with self._lock:
			self._entries.clear()

	def get_stats(self) -> str:
		"""Returns a formatted string of statistics for this cache."""
		return f'cache (entries: {len(self)}, hits: {self.hits}, misses: {self.misses}, expired: {self.expired})'
