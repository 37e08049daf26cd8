from pydantic import AliasChoices, BaseModel, Field
from datetime import datetime
from typing import Optional
from enum import Enum

SYSTEM_SENDER_ID = "system"


class SenderRole(str, Enum):
    CUSTOMER = "customer"
    PHARMACY = "pharmacy"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


class Participants(BaseModel):
    customerId: str
    customerName: Optional[str] = None
    pharmacyId: str
    pharmacyName: Optional[str] = None


class LastMessage(BaseModel):
    text: str
    senderId: str
    timestamp: datetime
    seq: int


class ChatChannel(BaseModel):
    chatId: str = Field(..., validation_alias=AliasChoices("_id", "chatId"))
    requestId: str
    participants: Participants
    isActive: bool = True
    lastMessage: Optional[LastMessage] = None
    createdAt: datetime
    updatedAt: datetime

    class Config:
        populate_by_name = True

    def role_of(self, user_id: str) -> Optional[SenderRole]:
        if user_id == self.participants.customerId:
            return SenderRole.CUSTOMER
        if user_id == self.participants.pharmacyId:
            return SenderRole.PHARMACY
        return None

    def counterpart_of(self, user_id: str) -> Optional[str]:
        if user_id == self.participants.customerId:
            return self.participants.pharmacyId
        if user_id == self.participants.pharmacyId:
            return self.participants.customerId
        return None


class Message(BaseModel):
    messageId: str = Field(..., validation_alias=AliasChoices("_id", "messageId"))
    chatId: str
    seq: int
    senderId: str
    senderRole: SenderRole
    text: str = ""
    type: MessageType = MessageType.TEXT
    imageUrl: Optional[str] = None
    createdAt: datetime
    readAt: Optional[datetime] = None

    class Config:
        populate_by_name = True


class MessageCreate(BaseModel):
    text: str = Field("", max_length=2000)
    type: MessageType = MessageType.TEXT
    imageUrl: Optional[str] = None
