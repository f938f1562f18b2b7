"""
Work Order Pydantic Schemas

Validated inputs for the work order engine and read models it returns.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Inputs
# ============================================================================

class WorkOrderCreate(BaseModel):
    """Create a new work order"""
    product_id: int
    planned_quantity: Decimal = Field(..., gt=0, description="Quantity to produce")
    bom_item_id: Optional[int] = None
    sales_order_ref: Optional[str] = Field(None, max_length=100)
    priority: Optional[int] = Field(None, ge=0, description="Lower = more urgent")
    planned_start: Optional[datetime] = None
    planned_end: Optional[datetime] = None
    notes: Optional[str] = None


class ProductionEntry(BaseModel):
    """Quantities reported by an operator for one production recording"""
    produced_delta: Decimal = Field(..., ge=0)
    scrap_delta: Decimal = Field(Decimal("0"), ge=0)
    idempotency_key: Optional[str] = Field(None, max_length=100)
    operator: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


# ============================================================================
# Read models
# ============================================================================

class WorkOrderProgress(BaseModel):
    """Progress snapshot of a work order"""
    planned_quantity: Decimal
    produced_quantity: Decimal
    scrap_quantity: Decimal
    remaining_quantity: Decimal
    progress_percentage: float

