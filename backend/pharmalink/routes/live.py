"""WebSocket feeds: nearby requests for pharmacies, chat messages, and alerts.

Each socket is authenticated with the same bearer token as the REST API,
passed as ``?token=`` since browsers cannot set headers on a WebSocket.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from pharmalink import config
from pharmalink.errors import NotFoundError
from pharmalink.models.chat import Message
from pharmalink.models.request import NearbyRequest
from pharmalink.models.user import PharmacyProfile
from pharmalink.services.broadcast import NewRequestDetector, broadcast_engine
from pharmalink.services.chat_service import ChatService
from pharmalink.services.notification_service import NotificationService
from pharmalink.utils.auth import user_from_token
from pharmalink.utils.ws_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter()


async def _hold_open(websocket: WebSocket):
    """Keep the socket open until the client goes away. Incoming frames are ignored."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@router.websocket("/ws/nearby")
async def nearby_feed(websocket: WebSocket, token: str = Query(...)):
    user = await user_from_token(token)
    if user is None or user.get("role") != "pharmacy":
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    profile = PharmacyProfile(**user["pharmacyProfile"]) if user.get("pharmacyProfile") else None
    if profile is None or profile.location is None or not profile.isOnline:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Go online with a location first")
        return

    pharmacy_id = user["_id"]
    if not await manager.connect(pharmacy_id, websocket):
        return

    detector = NewRequestDetector()
    alerts = NotificationService()

    async def on_change(requests: List[NearbyRequest]):
        await websocket.send_json(jsonable_encoder({"type": "nearby", "requests": requests}))
        for request in detector.diff(requests):
            await alerts.notify(
                pharmacy_id,
                "New medicine request nearby",
                f"{request.summary()} ({request.distanceKm:.1f} km away)",
                type="new_request",
                link=f"/pharmacy/request/{request.requestId}",
                payload={"requestId": request.requestId},
                dedupe_key=f"request:{request.requestId}",
            )

    subscription = await broadcast_engine.subscribe(profile.location, config.BROADCAST_RADIUS_KM, on_change)
    try:
        await _hold_open(websocket)
    finally:
        subscription()
        await manager.disconnect(pharmacy_id, websocket)


@router.websocket("/ws/chats/{chat_id}")
async def chat_feed(websocket: WebSocket, chat_id: str, token: str = Query(...), after_seq: Optional[int] = Query(None)):
    user = await user_from_token(token)
    chats = ChatService()
    chat = await chats.get(chat_id)
    if user is None or chat is None or chat.role_of(user["_id"]) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not await manager.connect(user["_id"], websocket):
        return

    async def on_message(message: Message):
        await websocket.send_json(jsonable_encoder({"type": "message", "message": message}))

    try:
        subscription = await chats.subscribe(chat_id, on_message, after_seq=after_seq)
    except NotFoundError:
        await manager.disconnect(user["_id"], websocket)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        await _hold_open(websocket)
    finally:
        subscription()
        await manager.disconnect(user["_id"], websocket)


@router.websocket("/ws/notifications")
async def notification_feed(websocket: WebSocket, token: str = Query(...)):
    user = await user_from_token(token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not await manager.connect(user["_id"], websocket):
        return
    try:
        await _hold_open(websocket)
    finally:
        await manager.disconnect(user["_id"], websocket)
