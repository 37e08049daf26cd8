import logging
from datetime import datetime
from pharmalink.db import get_db
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


async def log_event(
    action: str,
    details: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None
):
    """
    Log an event to both the application logger and the activity_logs collection
    """
    try:
        log_message = f"Action: {action}"
        if user_id:
            log_message += f" | User: {user_id}"
        if details:
            log_message += f" | Details: {details}"

        logger.info(log_message)

        db = get_db()
        if db is None:
            return
        await db["activity_logs"].insert_one({
            "action": action,
            "details": details or {},
            "userId": user_id,
            "timestamp": datetime.utcnow(),
            "ipAddress": ip_address
        })

    except Exception as e:
        # The audit trail must never break the operation being audited
        logger.error(f"Failed to log event: {e}")


def log_error(message: str, error: Exception, user_id: Optional[str] = None):
    error_message = f"Error: {message} | Exception: {str(error)}"
    if user_id:
        error_message += f" | User: {user_id}"

    logger.error(error_message)


# Event type constants for consistency
class EventTypes:
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    PHARMACY_ONLINE_CHANGED = "pharmacy_online_changed"

    REQUEST_CREATED = "request_created"
    REQUEST_CLOSED = "request_closed"
    REQUESTS_EXPIRED = "requests_expired"

    RESPONSE_SUBMITTED = "response_submitted"
    RESPONSE_ROLLED_BACK = "response_rolled_back"

    CHAT_CREATED = "chat_created"
    MESSAGE_SENT = "message_sent"

    FILE_UPLOADED = "file_uploaded"

    EXPIRY_SWEEP_COMPLETED = "expiry_sweep_completed"
    EXPIRY_SWEEP_ERROR = "expiry_sweep_error"
