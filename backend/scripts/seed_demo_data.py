#!/usr/bin/env python3
"""
Shopfloor - Demo Data Seeder

Creates the "Widget" demo and walks one work order through its lifecycle:
- Products Widget, Bolt, Sheet with BOM Widget = 1 x Bolt + 2 x Sheet
- Received lots: 11 Bolt, 25 Sheet
- One press, one work order of 10 Widgets
- Check -> Schedule -> Start -> record 8 good + 1 scrap -> record 2 good -> completed

The seeder runs with an over-production tolerance of 1 so the scrapped unit
can be made up.

Usage:
  cd backend
  python scripts/seed_demo_data.py
"""
import os
import sys
from datetime import timedelta
from decimal import Decimal

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shopfloor.core.clock import utcnow
from shopfloor.db.session import SessionLocal, init_database
from shopfloor.logging_config import setup_logging
from shopfloor.models import Machine, Product, ProductType
from shopfloor.services.work_order_service import WorkOrderEngine


def get_or_create_product(db, code, name, product_type):
    product = db.query(Product).filter(Product.code == code).first()
    if product:
        print(f"   ↺ {code} already exists")
        return product
    product = Product(code=code, name=name, product_type=product_type.value, is_stocked=True)
    db.add(product)
    db.commit()
    print(f"   ✅ Created product {code}")
    return product


def create_demo_data():
    """Seed the Widget demo and run it to completion"""
    setup_logging()
    init_database()
    db = SessionLocal()

    try:
        print("🌱 Creating Shopfloor demo data...")
        print("=" * 50)

        engine = WorkOrderEngine(db, tolerance=Decimal("1"))

        # ========================================
        # 1. ITEM MASTER + BOM
        # ========================================
        print("\n📦 Products")
        widget = get_or_create_product(db, "WIDGET", "Widget", ProductType.FINISHED_GOOD)
        bolt = get_or_create_product(db, "BOLT", "Bolt", ProductType.RAW_MATERIAL)
        sheet = get_or_create_product(db, "SHEET", "Sheet", ProductType.RAW_MATERIAL)

        if not engine.resolver.has_bom(widget.id):
            engine.resolver.add_bom_item(widget.id, bolt.id, 1)
            engine.resolver.add_bom_item(widget.id, sheet.id, 2)
            print("   ✅ BOM: WIDGET = 1 x BOLT + 2 x SHEET")

        # ========================================
        # 2. STOCK
        # ========================================
        print("\n🏷️  Receiving stock")
        engine.ledger.receive(bolt.id, 11, unit_cost="0.05")
        engine.ledger.receive(sheet.id, 25, unit_cost="0.40")
        print(f"   • BOLT on hand: {engine.ledger.on_hand(bolt.id)}")
        print(f"   • SHEET on hand: {engine.ledger.on_hand(sheet.id)}")

        # ========================================
        # 3. MACHINE
        # ========================================
        machine = db.query(Machine).filter(Machine.code == "PRESS-01").first()
        if not machine:
            machine = Machine(code="PRESS-01", name="Press #1", machine_type="press")
            db.add(machine)
            db.commit()

        # ========================================
        # 4. WORK ORDER LIFECYCLE
        # ========================================
        print("\n🏭 Work order")
        check = engine.check(widget.id, 10)
        for requirement in check.requirements:
            print(
                f"   • {requirement.component_code}: need {requirement.required_quantity}, "
                f"have {requirement.available_quantity}, short {requirement.shortage}"
            )

        start = engine.scheduler.find_earliest_slot(machine.id, timedelta(hours=8), not_before=utcnow())
        work_order = engine.create({"product_id": widget.id, "planned_quantity": 10}, created_by="seed")
        engine.schedule(work_order.id, machine.id, start, start + timedelta(hours=8))
        engine.start(work_order.id)
        print(f"   ✅ {work_order.code} started on {machine.code}")

        engine.record_production(work_order.id, 8, scrap_delta=1, operator="seed")
        print(f"   • after 8 good / 1 scrap: {work_order.status}")
        engine.record_production(work_order.id, 2, operator="seed")
        progress = engine.progress(work_order.id)
        print(f"   • after 2 good: {work_order.status} ({progress.progress_percentage}%)")

        print("\n📊 Summary:")
        print(f"   • WIDGET on hand: {engine.ledger.on_hand(widget.id)}")
        print(f"   • BOLT on hand: {engine.ledger.on_hand(bolt.id)}")
        print(f"   • SHEET on hand: {engine.ledger.on_hand(sheet.id)}")

    except Exception as e:
        print(f"\n❌ Error creating demo data: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    create_demo_data()
