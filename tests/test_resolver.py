import asyncio
import base64

import httpx
import pytest

from conftest import make_answer, make_client, make_query
from dohforwarder.cache import Cache
from dohforwarder.errors import UpstreamStatusError
from dohforwarder.resolver import DohResolver
from dohforwarder.upstream import DohRequestEncoder

UPSTREAM = 'https://doh.example/dns-query'
PEER = ('192.0.2.53', 40000)


class EchoUpstream:
	"""DoH server stub answering every query for the question it was asked."""

	def __init__(self, cache_control='max-age=60', status=200):
		self.cache_control = cache_control
		self.status = status
		self.requests = []

	def query_of(self, request):
		if request.method == 'GET':
			return base64.b64decode(request.url.params['dns'])
		return request.content

	def __call__(self, request):
		self.requests.append(request)
		headers = {'Cache-Control': self.cache_control} if self.cache_control else {}
		return httpx.Response(self.status, content=make_answer(self.query_of(request)), headers=headers)


def make_resolver(upstream, clock=None, method='GET', coalesce=True):
	return DohResolver(Cache(clock), DohRequestEncoder(UPSTREAM, method), make_client(upstream), coalesce=coalesce)


@pytest.mark.parametrize('method', ['GET', 'POST'])
def test_miss_relays_upstream_answer(method, transport):
	upstream = EchoUpstream()
	query = make_query(qid=0x1234)

	async def run():
		resolver = make_resolver(upstream, method=method)
		await resolver.adispatch(query, PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert transport.sent == [(make_answer(query), PEER)]
	assert upstream.requests[0].method == method
	assert resolver.answers == 1
	assert len(resolver.cache) == 1


def test_hit_skips_upstream(clock, transport):
	upstream = EchoUpstream()
	first = make_query(qid=0x0001)
	second = make_query(qid=0x0002)

	async def run():
		resolver = make_resolver(upstream, clock)
		await resolver.adispatch(first, PEER, transport)
		await resolver.adispatch(second, PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert len(upstream.requests) == 1
	assert transport.sent[1] == (b'\x00\x02' + make_answer(first)[2:], PEER)
	assert resolver.cache.hits == 1


def test_expired_answer_is_fetched_again(clock, transport):
	upstream = EchoUpstream('max-age=60')
	query = make_query()

	async def run():
		resolver = make_resolver(upstream, clock)
		await resolver.adispatch(query, PEER, transport)
		clock.advance(61)
		await resolver.adispatch(query, PEER, transport)
		await resolver.client.aclose()

	asyncio.run(run())

	assert len(upstream.requests) == 2
	assert len(transport.sent) == 2


def test_uncacheable_answer_is_still_relayed(transport):
	upstream = EchoUpstream(cache_control='no-store')
	query = make_query()

	async def run():
		resolver = make_resolver(upstream)
		await resolver.adispatch(query, PEER, transport)
		await resolver.adispatch(query, PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert len(upstream.requests) == 2
	assert len(transport.sent) == 2
	assert len(resolver.cache) == 0


def test_upstream_failure_drops_query(transport, caplog):
	upstream = EchoUpstream(status=503)

	async def run():
		resolver = make_resolver(upstream)
		await resolver.adispatch(make_query(), PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert transport.sent == []
	assert resolver.dropped == 1
	assert len(resolver.cache) == 0
	assert '503' in caplog.text


def test_transport_failure_drops_query(transport):
	def handler(request):
		raise httpx.ConnectTimeout('timed out', request=request)

	async def run():
		resolver = make_resolver(handler)
		await resolver.adispatch(make_query(), PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert transport.sent == []
	assert resolver.dropped == 1


def test_closed_transport_is_not_written(transport):
	transport.close()

	async def run():
		resolver = make_resolver(EchoUpstream())
		await resolver.adispatch(make_query(), PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert transport.sent == []
	assert resolver.dropped == 1


class GatedUpstream(EchoUpstream):
	"""Holds every request until released."""

	async def __call__(self, request):
		self.requests.append(request)
		await self.release.wait()

		if self.status != 200:
			return httpx.Response(self.status)

		return httpx.Response(200, content=make_answer(self.query_of(request)), headers={'Cache-Control': self.cache_control})


def resolve_concurrently(upstream, queries, coalesce=True):
	async def run():
		upstream.release = asyncio.Event()
		resolver = make_resolver(upstream, coalesce=coalesce)
		tasks = [asyncio.create_task(resolver.aresolve(query)) for query in queries]

		await asyncio.sleep(0.05)
		upstream.release.set()

		results = await asyncio.gather(*tasks, return_exceptions=True)
		await resolver.client.aclose()
		return resolver, results

	return asyncio.run(run())


def test_concurrent_misses_share_one_request():
	upstream = GatedUpstream()
	queries = [make_query(qid=i) for i in range(1, 6)]

	resolver, results = resolve_concurrently(upstream, queries)

	assert len(upstream.requests) == 1
	assert resolver.coalesced == 4
	for query, answer in zip(queries, results):
		assert answer == query[:2] + make_answer(queries[0])[2:]
	assert not resolver._inflight


def test_concurrent_misses_without_coalescing():
	upstream = GatedUpstream()
	queries = [make_query(qid=i) for i in range(1, 6)]

	resolver, results = resolve_concurrently(upstream, queries, coalesce=False)

	assert len(upstream.requests) == 5
	assert resolver.coalesced == 0
	assert results == [make_answer(query) for query in queries]


def test_failed_shared_request_fails_every_waiter():
	upstream = GatedUpstream(status=500)
	queries = [make_query(qid=i) for i in range(1, 4)]

	resolver, results = resolve_concurrently(upstream, queries)

	assert len(upstream.requests) == 1
	assert all(isinstance(result, UpstreamStatusError) for result in results)
	assert not resolver._inflight


def test_distinct_questions_are_not_coalesced():
	upstream = GatedUpstream()
	queries = [make_query('example.com'), make_query('example.org')]

	resolver, results = resolve_concurrently(upstream, queries)

	assert len(upstream.requests) == 2
	assert results == [make_answer(query) for query in queries]


def test_stats(transport):
	async def run():
		resolver = make_resolver(EchoUpstream())
		await resolver.adispatch(make_query(), PEER, transport)
		await resolver.adispatch(make_query(), PEER, transport)
		await resolver.client.aclose()
		return resolver.get_stats()

	stats = asyncio.run(run())

	assert 'queries: 2' in stats
	assert 'answers: 2' in stats
	assert 'hits: 1' in stats
	assert UPSTREAM in stats


def test_huge_max_age_is_still_relayed(transport):
	upstream = EchoUpstream(cache_control='max-age=' + '9' * 400)
	query = make_query()

	async def run():
		resolver = make_resolver(upstream)
		await resolver.adispatch(query, PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert transport.sent == [(make_answer(query), PEER)]
	assert resolver.dropped == 0
	assert len(resolver.cache) == 1


def test_undecodable_body_drops_query(transport):
	class GarbledStream(httpx.AsyncByteStream):
		async def __aiter__(self):
			yield b'not gzip data'

	def handler(request):
		return httpx.Response(200, headers={'Content-Encoding': 'gzip'}, stream=GarbledStream())

	async def run():
		resolver = make_resolver(handler)
		await resolver.adispatch(make_query(), PEER, transport)
		await resolver.client.aclose()
		return resolver

	resolver = asyncio.run(run())

	assert transport.sent == []
	assert resolver.dropped == 1


def test_short_query_is_forwarded(transport):
	def handler(request):
		return httpx.Response(200, content=request.content)

	async def run():
		resolver = make_resolver(handler, method='POST')
		await resolver.adispatch(b'\x12', PEER, transport)
		await resolver.client.aclose()

	asyncio.run(run())

	assert transport.sent == [(b'\x12', PEER)]
