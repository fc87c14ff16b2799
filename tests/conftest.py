from typing import Callable, List, Tuple

import dns.message
import dns.rrset
import httpx
import pytest

from dohforwarder.upstream import DohUpstreamClient


def make_query(qname: str = 'example.com', rdtype: str = 'A', qid: int = 0x1234) -> bytes:
	query = dns.message.make_query(qname, rdtype)
	query.id = qid
	return query.to_wire()


def make_answer(query: bytes, address: str = '93.184.216.34', ttl: int = 60) -> bytes:
	request = dns.message.from_wire(query)
	response = dns.message.make_response(request)
	qname = request.question[0].name
	response.answer.append(dns.rrset.from_text(qname, ttl, 'IN', 'A', address))
	return response.to_wire()


def make_client(handler: Callable) -> DohUpstreamClient:
	return DohUpstreamClient('https://doh.example/dns-query', http2=False, transport=httpx.MockTransport(handler))


class FakeClock:
	def __init__(self, now: float = 1000.0) -> None:
		self.now = now

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class FakeTransport:
	"""Records datagrams instead of writing them to a socket."""

	def __init__(self) -> None:
		self.sent: List[Tuple[bytes, Tuple[str, int]]] = []
		self.closed = False

	def sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
		self.sent.append((data, addr))

	def is_closing(self) -> bool:
		return self.closed

	def close(self) -> None:
		self.closed = True


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
	return FakeTransport()
