import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Set, AsyncIterator
from bson import ObjectId
from pymongo import ReturnDocument
from pharmalink import config
from pharmalink.db import get_db
from pharmalink.errors import ChannelNotFoundError, ValidationError
from pharmalink.models.chat import ChatChannel, Message, MessageType, SenderRole, SYSTEM_SENDER_ID
from pharmalink.utils.callbacks import invoke_callback
from pharmalink.utils.logger import log_event, EventTypes
from pharmalink.utils.retry import insert_once, with_retry

logger = logging.getLogger(__name__)


def _counter_id(chat_id: str) -> str:
    return f"chat:{chat_id}"


class ChatService:
    """Two-party message log scoped to one request/pharmacy pairing.

    Messages carry a per-chat ``seq`` taken from the ``counters`` collection.
    The same counter update keeps a monotone ``lastAt`` which becomes the
    message's ``createdAt``, so ordering by ``createdAt`` then ``seq`` is the
    same as ordering by ``seq`` and neither ever goes backwards.
    """

    def __init__(self, db=None):
        self.db = db if db is not None else get_db()

    @staticmethod
    def _oid(chat_id: str) -> Optional[ObjectId]:
        return ObjectId(chat_id) if ObjectId.is_valid(chat_id) else None

    async def create(
        self,
        request_id: str,
        customer_id: str,
        customer_name: Optional[str],
        pharmacy_id: str,
        pharmacy_name: Optional[str],
        chat_id: Optional[str] = None,
    ) -> str:
        now = datetime.utcnow()
        chat_doc = {
            "_id": ObjectId(chat_id) if chat_id else ObjectId(),
            "requestId": request_id,
            "participants": {
                "customerId": customer_id,
                "customerName": customer_name,
                "pharmacyId": pharmacy_id,
                "pharmacyName": pharmacy_name,
            },
            "isActive": True,
            "lastMessage": None,
            "createdAt": now,
            "updatedAt": now,
        }
        await insert_once(self.db["chats"], chat_doc, "create chat")
        await log_event(EventTypes.CHAT_CREATED, {"chat_id": str(chat_doc["_id"]), "request_id": request_id})
        return str(chat_doc["_id"])

    async def discard(self, chat_id: str) -> None:
        """Remove a chat and its log. Only used to roll back a failed response submission."""
        oid = self._oid(chat_id)
        await with_retry(lambda: self.db["chats"].delete_one({"_id": oid}), "discard chat")
        await with_retry(lambda: self.db["messages"].delete_many({"chatId": chat_id}), "discard chat messages")
        await with_retry(lambda: self.db["counters"].delete_one({"_id": _counter_id(chat_id)}), "discard chat counter")

    async def get(self, chat_id: str) -> Optional[ChatChannel]:
        oid = self._oid(chat_id)
        if oid is None:
            return None
        doc = await with_retry(lambda: self.db["chats"].find_one({"_id": oid}), "get chat")
        if doc is None:
            return None
        doc["_id"] = str(doc["_id"])
        return ChatChannel(**doc)

    async def require(self, chat_id: str) -> ChatChannel:
        chat = await self.get(chat_id)
        if chat is None:
            raise ChannelNotFoundError()
        return chat

    async def _find_chats(self, query: dict) -> List[ChatChannel]:
        docs = await with_retry(
            lambda: self.db["chats"].find(query).sort("updatedAt", -1).to_list(None), "list chats"
        )
        chats = []
        for doc in docs:
            doc["_id"] = str(doc["_id"])
            chats.append(ChatChannel(**doc))
        return chats

    async def list_for_request(self, request_id: str) -> List[ChatChannel]:
        return await self._find_chats({"requestId": request_id})

    async def list_for_user(self, user_id: str) -> List[ChatChannel]:
        return await self._find_chats({
            "$or": [
                {"participants.customerId": user_id},
                {"participants.pharmacyId": user_id},
            ]
        })

    async def send_message(
        self,
        chat_id: str,
        sender_id: str,
        sender_role: SenderRole,
        text: str = "",
        type: MessageType = MessageType.TEXT,
        image_url: Optional[str] = None,
    ) -> str:
        try:
            sender_role = SenderRole(sender_role)
            type = MessageType(type)
        except ValueError as e:
            raise ValidationError(str(e))
        text = (text or "").strip()
        if type == MessageType.IMAGE and not image_url:
            raise ValidationError("Image messages need an imageUrl")
        if type != MessageType.IMAGE and not text:
            raise ValidationError("Message text is required")

        chat = await self.require(chat_id)

        counter = await with_retry(
            lambda: self.db["counters"].find_one_and_update(
                {"_id": _counter_id(chat_id)},
                {"$inc": {"seq": 1}, "$max": {"lastAt": datetime.utcnow()}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            ),
            "allocate message sequence",
        )
        seq = counter["seq"]
        created_at = counter["lastAt"]

        message_doc = {
            "_id": ObjectId(),
            "chatId": chat_id,
            "seq": seq,
            "senderId": sender_id,
            "senderRole": sender_role.value,
            "text": text,
            "type": type.value,
            "imageUrl": image_url,
            "createdAt": created_at,
            "readAt": None,
        }
        await insert_once(self.db["messages"], message_doc, "append message")

        # Concurrent sends may land out of order; only move the cache forward.
        await with_retry(
            lambda: self.db["chats"].update_one(
                {
                    "_id": ObjectId(chat.chatId),
                    "$or": [{"lastMessage": None}, {"lastMessage.seq": {"$lt": seq}}],
                },
                {"$set": {
                    "lastMessage": {
                        "text": text or "Photo",
                        "senderId": sender_id,
                        "timestamp": created_at,
                        "seq": seq,
                    },
                    "updatedAt": created_at,
                }},
            ),
            "update last message",
        )

        chat_hub.wake(chat_id)
        await log_event(EventTypes.MESSAGE_SENT, {"chat_id": chat_id, "seq": seq}, user_id=sender_id)
        return str(message_doc["_id"])

    async def post_system_message(self, chat_id: str, text: str, sender_role: SenderRole = SenderRole.CUSTOMER) -> str:
        return await self.send_message(chat_id, SYSTEM_SENDER_ID, sender_role, text, MessageType.SYSTEM)

    async def list_messages(self, chat_id: str, after_seq: Optional[int] = None, limit: Optional[int] = None) -> List[Message]:
        """Messages in append order, optionally only those after ``after_seq``."""
        await self.require(chat_id)
        query = {"chatId": chat_id}
        if after_seq is not None:
            query["seq"] = {"$gt": after_seq}

        def _find():
            cursor = self.db["messages"].find(query).sort([("createdAt", 1), ("seq", 1)])
            if limit:
                cursor = cursor.limit(limit)
            return cursor.to_list(None)

        docs = await with_retry(_find, "list messages")
        messages = []
        for doc in docs:
            doc["_id"] = str(doc["_id"])
            messages.append(Message(**doc))
        return messages

    async def iter_messages(self, chat_id: str, after_seq: int = 0, batch_size: int = 100) -> AsyncIterator[Message]:
        """Lazily page through the log. Restart from any ``seq`` already seen."""
        while True:
            batch = await self.list_messages(chat_id, after_seq=after_seq, limit=batch_size)
            for message in batch:
                yield message
                after_seq = message.seq
            if len(batch) < batch_size:
                return

    async def current_seq(self, chat_id: str) -> int:
        counter = await with_retry(
            lambda: self.db["counters"].find_one({"_id": _counter_id(chat_id)}), "read message sequence"
        )
        return counter["seq"] if counter else 0

    async def mark_read(self, chat_id: str, message_id: str, reader_id: str) -> bool:
        """Set ``readAt`` once, and only for messages the reader did not send."""
        if not ObjectId.is_valid(message_id):
            return False
        result = await with_retry(
            lambda: self.db["messages"].update_one(
                {
                    "_id": ObjectId(message_id),
                    "chatId": chat_id,
                    "senderId": {"$ne": reader_id},
                    "readAt": None,
                },
                {"$set": {"readAt": datetime.utcnow()}},
            ),
            "mark message read",
        )
        return result.modified_count > 0

    async def subscribe(self, chat_id: str, on_message, after_seq: Optional[int] = None) -> "ChatSubscription":
        """Deliver each new message once, in order, until the handle is called.

        Without ``after_seq`` only messages sent after subscribing are
        delivered; callers catching up after a reconnect pass the last seq
        they applied.
        """
        await self.require(chat_id)
        if after_seq is None:
            after_seq = await self.current_seq(chat_id)
        subscription = ChatSubscription(self, chat_id, on_message, after_seq)
        chat_hub.add(subscription)
        subscription.task = asyncio.create_task(subscription.run())
        return subscription


class ChatSubscription:
    def __init__(self, service: ChatService, chat_id: str, on_message, last_seq: int,
                 interval: float = None, gap_timeout: float = None):
        self.service = service
        self.chat_id = chat_id
        self.on_message = on_message
        self.last_seq = last_seq
        self.interval = interval if interval is not None else config.LIVE_QUERY_INTERVAL_SECONDS
        self.gap_timeout = gap_timeout if gap_timeout is not None else config.CHAT_GAP_TIMEOUT_SECONDS
        self.cancelled = False
        self.task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._gap_since: Optional[float] = None

    def __call__(self):
        self.cancel()

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        chat_hub.discard(self)
        self._wakeup.set()

    def wake(self):
        self._wakeup.set()

    async def wait_closed(self):
        if self.task is not None:
            await self.task

    async def run(self):
        while not self.cancelled:
            try:
                await self.drain()
            except Exception as e:
                logger.warning(f"Chat feed {self.chat_id} poll failed: {e}")
            if self.cancelled:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def drain(self):
        messages = await self.service.list_messages(self.chat_id, after_seq=self.last_seq)
        for message in messages:
            if self.cancelled:
                return
            if message.seq != self.last_seq + 1:
                # A lower seq may still be in flight; hold back until it lands
                # or the gap is old enough to mean its send failed.
                if self._gap_since is None:
                    self._gap_since = time.monotonic()
                if time.monotonic() - self._gap_since < self.gap_timeout:
                    return
                logger.info("Chat %s: skipping seq %d-%d", self.chat_id, self.last_seq + 1, message.seq - 1)
            self._gap_since = None
            self.last_seq = message.seq
            await invoke_callback(self.on_message, message)


class ChatHub:
    """In-process registry so a send wakes local subscribers without waiting for a poll."""

    def __init__(self):
        self._subscriptions: Dict[str, Set[ChatSubscription]] = {}

    def add(self, subscription: ChatSubscription):
        self._subscriptions.setdefault(subscription.chat_id, set()).add(subscription)

    def discard(self, subscription: ChatSubscription):
        subscriptions = self._subscriptions.get(subscription.chat_id)
        if subscriptions is not None:
            subscriptions.discard(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.chat_id]

    def wake(self, chat_id: str):
        for subscription in list(self._subscriptions.get(chat_id, ())):
            subscription.wake()


# Global instance
chat_hub = ChatHub()
