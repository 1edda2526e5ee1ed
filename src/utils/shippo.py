import os
import re
from typing import Any, Optional

import httpx
import shippo as shippo_module
from dotenv import load_dotenv
from shippo.models import components

from src.utils.logger import shippo_logger

load_dotenv()

SHIPPO_API_BASE = "https://api.goshippo.com"

_ORDER_REF = re.compile(r"order:([A-Za-z0-9_\-]+)")

_sdk = None


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=30.0)


def shippo_api_key() -> str:
    return os.environ.get("SHIPPO_API_KEY", "")


def get_shippo_sdk():
    """Shippo SDK singleton, built on first use."""
    global _sdk
    if _sdk is None:
        _sdk = shippo_module.Shippo(api_key_header=shippo_api_key())
    return _sdk


def get_attr(obj: Any, key: str, default: Any = None) -> Any:
    # Shippo SDK returns models, webhooks deliver dicts
    try:
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)
    except Exception:
        return default


def order_metadata(order_id: str) -> str:
    return f"order:{order_id}"


def parse_order_metadata(metadata: Any) -> Optional[str]:
    """Extract the order id from "order:<ID>" correlation metadata."""
    if not metadata or not isinstance(metadata, str):
        return None
    m = _ORDER_REF.search(metadata)
    return m.group(1) if m else None


def _label_file_type(value: Optional[str]):
    if not value:
        return components.LabelFileTypeEnum.PDF_4X6
    try:
        return components.LabelFileTypeEnum(value.upper())
    except ValueError:
        return components.LabelFileTypeEnum.PDF_4X6


def shippo_purchase_label(
    rate_id: str, order_id: str, label_file_type: Optional[str] = None
):
    """Buy a label synchronously for ``rate_id``, tagged with the order correlation id."""
    transaction = get_shippo_sdk().transactions.create(
        components.TransactionCreateRequest(
            rate=rate_id,
            label_file_type=_label_file_type(label_file_type),
            async_=False,
            metadata=order_metadata(order_id),
        )
    )
    shippo_logger.debug("Shippo transaction: %s", transaction)
    return transaction


async def shippo_void_label(transaction_id: str) -> bool:
    """
    Request a label refund (void) from Shippo.
    Returns True if Shippo accepted the request, False otherwise.

    Follows: POST https://api.goshippo.com/refunds/
    """
    if not transaction_id:
        return False
    try:
        headers = {"Authorization": f"ShippoToken {shippo_api_key()}"}
        async with _client() as client:
            response = await client.post(
                f"{SHIPPO_API_BASE}/refunds/",
                headers=headers,
                json={"transaction": transaction_id, "async": False},
            )

        if response.status_code in (200, 201):
            shippo_logger.info("Voided Shippo label: %s", transaction_id)
            return True
        shippo_logger.warning(
            "Failed to void label %s: HTTP %d - %s",
            transaction_id,
            response.status_code,
            response.text,
        )
        return False

    except Exception as e:
        shippo_logger.warning("Error voiding Shippo label %s: %s", transaction_id, e)
        return False
