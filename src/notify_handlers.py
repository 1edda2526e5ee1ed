from src.db.orders import insert_notification
from src.models.order import NotificationRequest
from src.utils.logger import log_api_request, notify_logger
from src.utils.safe_handler import safe_handler


# ===============================================================
# /notify
# ===============================================================
@safe_handler(default_detail="Could not create notification")
async def create_notification_handler(payload: NotificationRequest) -> dict:
    log_api_request(
        notify_logger, "POST", "/notify", {"user_id": payload.user_id, "kind": payload.kind}
    )
    row = insert_notification(
        user_id=payload.user_id,
        kind=payload.kind,
        title=payload.title.strip()[:200],
        body=payload.body[:2000],
        href=payload.href,
    )
    return {"ok": True, "id": (row or {}).get("id")}
