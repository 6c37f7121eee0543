from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class BillStatus(str, Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    # Reserved; nothing transitions into or out of it.
    PENDING = "PENDING"
    FINALIZED = "FINALIZED"
    ARCHIVED = "ARCHIVED"


MUTABLE_STATUSES = {BillStatus.DRAFT, BillStatus.OPEN}
FROZEN_STATUSES = {BillStatus.FINALIZED, BillStatus.ARCHIVED}


class ParticipantSnapshot(BaseModel):
    id: str
    display_name: str
    is_payer: bool = False


class ItemSnapshot(BaseModel):
    id: str
    name: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    notes: Optional[str] = None
    # Distinct participant ids, in claim order.
    claimed_by: List[str] = Field(default_factory=list)


class BillSnapshot(BaseModel):
    id: str
    code: str = ""
    title: str = ""
    currency: str = "USD"
    status: BillStatus = BillStatus.DRAFT
    tax_percentage: Decimal = Decimal("0")
    service_percentage: Decimal = Decimal("0")
    tip_amount: Decimal = Decimal("0")
    items: List[ItemSnapshot] = Field(default_factory=list)
    participants: List[ParticipantSnapshot] = Field(default_factory=list)

    def payer(self) -> Optional[ParticipantSnapshot]:
        return next((p for p in self.participants if p.is_payer), None)


class ParticipantTotal(BaseModel):
    participant_id: str
    display_name: str
    subtotal: Decimal = Decimal("0")
    tax_share: Decimal = Decimal("0")
    service_share: Decimal = Decimal("0")
    tip_share: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class FinalTotal(ParticipantTotal):
    bill_id: str
    created_at: Optional[datetime] = None
