from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CostPreviewRequest(BaseModel):
    route_id: str = Field(..., min_length=1)
    weekdays: List[int] = Field(..., min_length=1)


class PurchaseRequest(BaseModel):
    route_id: str = Field(..., min_length=1)
    time_slot_id: str = Field(..., min_length=1)
    boarding_point_id: str = Field(..., min_length=1)
    drop_off_point_id: str = Field(..., min_length=1)
    weekdays: List[int] = Field(..., min_length=1)
    start_date: date
    payment_method: Literal["cash", "online"]


class CancellationRequest(BaseModel):
    reason: Optional[str] = None


class AdminCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class EditDatesRequest(BaseModel):
    start_date: date
    end_date: date


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    reference_id: Optional[str] = None


class WalletAdjustmentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    direction: Literal["credit", "debit"]
    reason: str = Field(..., min_length=1)


class BlackoutRequest(BaseModel):
    name: str = Field(..., min_length=1)
    start_date: date
    end_date: Optional[date] = None


class HolidayImportRequest(BaseModel):
    year: Optional[int] = None
    names: Optional[List[str]] = None


class InvoiceRefundRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class TripGenerationRunRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dry_run: bool = False


class BillingRunRequest(BaseModel):
    today: Optional[date] = None
    sweep: bool = True
