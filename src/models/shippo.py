from pydantic import BaseModel, Field
from typing import Optional


class LabelPurchaseRequest(BaseModel):
    order_id: str
    seller_id: str
    rate_id: str = Field(..., description="Shippo rate object_id chosen by the seller")
    label_file_type: Optional[str] = Field(
        None, description="PDF_4X6 (default), PDF, PNG or ZPLII"
    )


class LabelResponse(BaseModel):
    order_id: str
    transaction_id: str
    status: str
    label_url: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    service: Optional[str] = None
