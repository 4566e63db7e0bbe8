"""WebSocket endpoints that forward change-hub events to connected clients.

Each connection owns its subscriptions and cancels them when the client goes
away; in-flight database lookups are not aborted.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..activity import ActivityFeed, ActivityStream, get_stream
from ..db import get_session_factory
from ..progression import NOTIFICATIONS_TABLE, ProgressionLedger, get_ledger
from ..realtime import INSERT, ChangeHub, Subscription, get_hub
from .auth import user_from_token
from .groups import GROUP_MESSAGES_TABLE, is_member

router = APIRouter(prefix="/realtime", tags=["realtime"])

logger = logging.getLogger(__name__)

# Close code for a missing or rejected bearer token
WS_UNAUTHENTICATED = 4401
# Signed in, but not a member of the group
WS_FORBIDDEN = 4403


async def _until_disconnect(websocket: WebSocket) -> None:
	try:
		while True:
			await websocket.receive_text()
	except WebSocketDisconnect:
		return


async def _serve(websocket: WebSocket, pumps: List[Callable[[], Awaitable[None]]], subscriptions: List[Subscription]) -> None:
	tasks = [asyncio.create_task(pump()) for pump in pumps]
	tasks.append(asyncio.create_task(_until_disconnect(websocket)))
	try:
		done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
		for task in done:
			if not task.cancelled() and task.exception() is not None and not isinstance(task.exception(), WebSocketDisconnect):
				logger.error("Realtime stream failed", exc_info=task.exception())
	finally:
		for sub in subscriptions:
			sub.cancel()
		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/activity")
async def activity_stream(
	websocket: WebSocket,
	stream: ActivityStream = Depends(get_stream),
	session_factory=Depends(get_session_factory),
):
	feed = ActivityFeed(stream, session_factory)
	# Subscribe before loading so nothing committed in between is missed
	subscription = feed.attach()
	feed.load()
	await websocket.accept()
	await websocket.send_json({
		"type": "snapshot",
		"activities": [v.to_dict() for v in feed.entries],
		"top_movers": [m.to_dict() for m in feed.top_movers()],
	})

	async def pump() -> None:
		async for view in feed.follow():
			await websocket.send_json({
				"type": "activity",
				"activity": view.to_dict(),
				"top_movers": [m.to_dict() for m in feed.top_movers()],
			})

	await _serve(websocket, [pump], [subscription])


@router.websocket("/profile")
async def profile_stream(
	websocket: WebSocket,
	token: Optional[str] = None,
	ledger: ProgressionLedger = Depends(get_ledger),
	hub: ChangeHub = Depends(get_hub),
	session_factory=Depends(get_session_factory),
):
	db = session_factory()
	try:
		user = user_from_token(db, token)
		state = ledger.load_profile(db, user)
	finally:
		db.close()
	if user is None or state is None:
		await websocket.close(code=WS_UNAUTHENTICATED)
		return

	await websocket.accept()
	profile_sub = ledger.watch(user.id)
	notification_sub = hub.subscribe(NOTIFICATIONS_TABLE, INSERT, {"user_id": user.id})
	await websocket.send_json({"type": "profile", "profile": state.to_dict(ledger.xp_per_level)})

	async def pump_profile() -> None:
		async for change in profile_sub:
			current = ledger.apply_remote_change(change)
			if current is not None:
				await websocket.send_json({"type": "profile", "profile": current.to_dict(ledger.xp_per_level)})

	async def pump_notifications() -> None:
		async for change in notification_sub:
			await websocket.send_json({"type": "notification", "notification": change.new})

	await _serve(websocket, [pump_profile, pump_notifications], [profile_sub, notification_sub])


@router.websocket("/groups/{group_id}")
async def group_stream(
	websocket: WebSocket,
	group_id: str,
	token: Optional[str] = None,
	hub: ChangeHub = Depends(get_hub),
	session_factory=Depends(get_session_factory),
):
	db = session_factory()
	try:
		user = user_from_token(db, token)
		allowed = user is not None and is_member(db, group_id, user.id)
	finally:
		db.close()
	if user is None:
		await websocket.close(code=WS_UNAUTHENTICATED)
		return
	if not allowed:
		await websocket.close(code=WS_FORBIDDEN)
		return

	# Subscribed before accepting so a message sent right after connecting is not missed
	subscription = hub.subscribe(GROUP_MESSAGES_TABLE, INSERT, {"group_id": group_id})
	await websocket.accept()

	async def pump() -> None:
		async for change in subscription:
			await websocket.send_json({"type": "message", "message": change.new})

	await _serve(websocket, [pump], [subscription])
