"""In-process change notification.

Writers publish a ChangeEvent after they commit a row; every connected client
holds a Subscription filtered by table, event type and optionally a row
predicate. Delivery is at-most-once and there is no replay: a client that
disconnects misses whatever was published meanwhile.
"""
from __future__ import annotations
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
ANY = "*"

RowMatch = Union[Mapping[str, Any], Callable[[Dict[str, Any]], bool], None]


@dataclass(frozen=True)
class ChangeEvent:
	table: str
	type: str
	new: Dict[str, Any]
	old: Optional[Dict[str, Any]] = None


_CLOSED = object()


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
	try:
		return asyncio.get_running_loop()
	except RuntimeError:
		return None


class Subscription:
	"""A live, non-restartable stream of change events.

	Iterate with ``async for`` or call ``await next()``. ``cancel()`` detaches
	from the hub; events queued before the cancel are still handed out, then
	the stream ends for good.
	"""

	def __init__(self, hub: "ChangeHub", table: str, event: str = ANY, match: RowMatch = None) -> None:
		self._hub = hub
		self.table = table
		self.event = event
		self._match = match
		self._queue: asyncio.Queue = asyncio.Queue()
		self._loop = _running_loop()
		self._cancelled = False
		self._exhausted = False

	@property
	def cancelled(self) -> bool:
		return self._cancelled

	def matches(self, change: ChangeEvent) -> bool:
		if change.table != self.table:
			return False
		if self.event != ANY and change.type != self.event:
			return False
		if self._match is None:
			return True
		if callable(self._match):
			return bool(self._match(change.new))
		return all(change.new.get(k) == v for k, v in self._match.items())

	def _deliver(self, item: Any) -> None:
		loop = self._loop
		if loop is None or _running_loop() is loop:
			self._queue.put_nowait(item)
			return
		try:
			loop.call_soon_threadsafe(self._queue.put_nowait, item)
		except RuntimeError:
			# subscriber's loop is gone
			logger.debug("Dropping %s event for closed subscriber", self.table)

	def cancel(self) -> None:
		if self._cancelled:
			return
		self._cancelled = True
		self._hub._detach(self)
		self._deliver(_CLOSED)

	async def next(self) -> Optional[ChangeEvent]:
		if self._exhausted:
			return None
		if self._loop is None:
			self._loop = asyncio.get_running_loop()
		item = await self._queue.get()
		if item is _CLOSED:
			self._exhausted = True
			return None
		return item

	def __aiter__(self) -> "Subscription":
		return self

	async def __anext__(self) -> ChangeEvent:
		change = await self.next()
		if change is None:
			raise StopAsyncIteration
		return change


class ChangeHub:
	def __init__(self) -> None:
		self._subscriptions: List[Subscription] = []
		self._lock = threading.Lock()

	def subscribe(self, table: str, event: str = ANY, match: RowMatch = None) -> Subscription:
		sub = Subscription(self, table, event, match)
		with self._lock:
			self._subscriptions.append(sub)
		return sub

	def publish(self, change: ChangeEvent) -> int:
		with self._lock:
			candidates = list(self._subscriptions)
		delivered = 0
		for sub in candidates:
			try:
				wanted = sub.matches(change)
			except Exception:
				logger.exception("Subscription filter failed for %s %s", change.type, change.table)
				continue
			if wanted:
				sub._deliver(change)
				delivered += 1
		return delivered

	def subscriber_count(self, table: Optional[str] = None) -> int:
		with self._lock:
			if table is None:
				return len(self._subscriptions)
			return sum(1 for s in self._subscriptions if s.table == table)

	def _detach(self, sub: Subscription) -> None:
		with self._lock:
			try:
				self._subscriptions.remove(sub)
			except ValueError:
				pass


hub = ChangeHub()


def get_hub() -> ChangeHub:
	return hub
