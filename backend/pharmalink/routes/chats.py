from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
from pharmalink.errors import ValidationError
from pharmalink.models.chat import ChatChannel, Message, MessageCreate, MessageType
from pharmalink.services.chat_service import ChatService
from pharmalink.services.notification_service import NotificationService
from pharmalink.utils.auth import get_current_user

router = APIRouter()


async def participant_chat(chat_id: str, current_user: dict) -> ChatChannel:
    chat = await ChatService().require(chat_id)
    if chat.role_of(current_user["_id"]) is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant in this chat")
    return chat


@router.get("", response_model=List[ChatChannel])
async def my_chats(current_user: dict = Depends(get_current_user)):
    return await ChatService().list_for_user(current_user["_id"])


@router.get("/{chat_id}", response_model=ChatChannel)
async def get_chat(chat_id: str, current_user: dict = Depends(get_current_user)):
    return await participant_chat(chat_id, current_user)


@router.get("/{chat_id}/messages", response_model=List[Message])
async def list_messages(
    chat_id: str,
    after_seq: Optional[int] = Query(None, ge=0),
    current_user: dict = Depends(get_current_user),
):
    await participant_chat(chat_id, current_user)
    return await ChatService().list_messages(chat_id, after_seq=after_seq)


@router.post("/{chat_id}/messages", status_code=201)
async def send_message(chat_id: str, data: MessageCreate, current_user: dict = Depends(get_current_user)):
    chat = await participant_chat(chat_id, current_user)
    if data.type == MessageType.SYSTEM:
        raise ValidationError("System messages cannot be sent by participants")

    sender_id = current_user["_id"]
    message_id = await ChatService().send_message(
        chat_id, sender_id, chat.role_of(sender_id), data.text, data.type, data.imageUrl
    )

    sender_name = chat.participants.customerName if sender_id == chat.participants.customerId else chat.participants.pharmacyName
    await NotificationService().notify(
        chat.counterpart_of(sender_id),
        f"New message from {sender_name or 'your contact'}",
        data.text[:100] if data.type == MessageType.TEXT else "Sent a photo",
        type="message",
        link=f"/chat/{chat_id}",
        payload={"chatId": chat_id, "messageId": message_id},
    )
    return {"messageId": message_id}


@router.post("/{chat_id}/messages/{message_id}/read")
async def mark_message_read(chat_id: str, message_id: str, current_user: dict = Depends(get_current_user)):
    await participant_chat(chat_id, current_user)
    updated = await ChatService().mark_read(chat_id, message_id, current_user["_id"])
    return {"updated": updated}
