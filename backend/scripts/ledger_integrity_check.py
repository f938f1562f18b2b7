#!/usr/bin/env python3
"""
Shopfloor Ledger Integrity Checker

Reports stored state that breaks the core's invariants:
- lots with negative quantity
- products whose active reservations exceed on-hand stock
- overlapping active allocations on one machine
- work orders whose produced + scrap exceeds planned + tolerance

Usage:
  cd backend
  python scripts/ledger_integrity_check.py

Exits non-zero when any issue is found. Nothing is repaired automatically.
"""
import os
import sys
from collections import defaultdict
from decimal import Decimal

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func
from sqlalchemy.orm import aliased

from shopfloor.core.settings import get_settings
from shopfloor.db.session import SessionLocal
from shopfloor.models import InventoryLot, InventoryReservation, MachineAllocation, WorkOrder


class LedgerIntegrityChecker:
    """Read-only invariant checks over the ledger and schedule tables"""

    def __init__(self, db=None, tolerance=None):
        self.db = db or SessionLocal()
        self.tolerance = Decimal(
            str(tolerance if tolerance is not None else get_settings().OVERPRODUCTION_TOLERANCE)
        )
        self.issues_found = []

    def run_full_check(self):
        print("🔍 Shopfloor Ledger Integrity Check")
        print("=" * 50)

        self.check_negative_lots()
        self.check_over_reserved_products()
        self.check_overlapping_allocations()
        self.check_work_order_quantities()

        self.print_summary()
        return self.issues_found

    def check_negative_lots(self):
        """Lots must never hold a negative quantity"""
        print("\n📦 Checking lot quantities...")
        negative = self.db.query(InventoryLot).filter(InventoryLot.quantity < 0).all()
        if negative:
            self.issues_found.append({
                'type': 'negative_lot',
                'count': len(negative),
                'lots': [lot.lot_number for lot in negative],
            })
            print(f"   ⚠️  {len(negative)} lots below zero")
        else:
            print("   ✅ No negative lots")

    def check_over_reserved_products(self):
        """Active reservations must be covered by on-hand stock"""
        print("\n🔒 Checking reservations against stock...")
        on_hand = dict(
            self.db.query(InventoryLot.product_id, func.sum(InventoryLot.quantity))
            .filter(InventoryLot.status == "active")
            .group_by(InventoryLot.product_id)
            .all()
        )
        reserved = (
            self.db.query(InventoryReservation.product_id, func.sum(InventoryReservation.remaining_quantity))
            .filter(InventoryReservation.status == "active")
            .group_by(InventoryReservation.product_id)
            .all()
        )
        over = [
            (product_id, Decimal(str(qty)), Decimal(str(on_hand.get(product_id) or 0)))
            for product_id, qty in reserved
            if Decimal(str(qty)) > Decimal(str(on_hand.get(product_id) or 0))
        ]
        if over:
            self.issues_found.append({'type': 'over_reserved', 'count': len(over), 'products': over})
            for product_id, qty, stock in over:
                print(f"   ⚠️  product {product_id}: reserved {qty} > on hand {stock}")
        else:
            print("   ✅ Reservations covered by stock")

    def check_overlapping_allocations(self):
        """No two active allocations on one machine may overlap"""
        print("\n🛠️  Checking machine allocations...")
        other = aliased(MachineAllocation)
        pairs = (
            self.db.query(MachineAllocation, other)
            .join(
                other,
                (other.machine_id == MachineAllocation.machine_id)
                & (other.id > MachineAllocation.id)
                & (other.start_at < MachineAllocation.end_at)
                & (other.end_at > MachineAllocation.start_at),
            )
            .filter(MachineAllocation.active.is_(True), other.active.is_(True))
            .all()
        )
        if pairs:
            by_machine = defaultdict(list)
            for first, second in pairs:
                by_machine[first.machine_id].append((first.work_order_id, second.work_order_id))
            self.issues_found.append({
                'type': 'overlapping_allocations',
                'count': len(pairs),
                'machines': dict(by_machine),
            })
            print(f"   ⚠️  {len(pairs)} overlapping allocation pairs")
        else:
            print("   ✅ No overlapping allocations")

    def check_work_order_quantities(self):
        """produced + scrap must stay within planned + tolerance"""
        print("\n🏭 Checking work order quantities...")
        offenders = [
            wo for wo in self.db.query(WorkOrder).all()
            if Decimal(wo.produced_quantity) + Decimal(wo.scrap_quantity)
            > Decimal(wo.planned_quantity) + self.tolerance
        ]
        if offenders:
            self.issues_found.append({
                'type': 'over_produced',
                'count': len(offenders),
                'work_orders': [wo.code for wo in offenders],
            })
            print(f"   ⚠️  {len(offenders)} work orders over planned + tolerance")
        else:
            print("   ✅ Work order quantities within limits")

    def print_summary(self):
        print("\n" + "=" * 50)
        if not self.issues_found:
            print("🎉 LEDGER INTEGRITY: OK")
        else:
            print(f"⚠️  LEDGER INTEGRITY: {len(self.issues_found)} ISSUE TYPES FOUND")


def main():
    """Run ledger integrity check"""
    db = SessionLocal()
    try:
        issues = LedgerIntegrityChecker(db).run_full_check()
    finally:
        db.close()
    sys.exit(1 if issues else 0)


if __name__ == "__main__":
    main()
