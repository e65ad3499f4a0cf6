"""
Dining Room Simulation Script

Drives several table sessions concurrently against a running sandbox:
each table orders, the "kitchen" moves its items through the status
lifecycle via the sandbox staff endpoint, and the table pays. The realtime
channel and refresh scheduler are exercised end to end over Socket.IO.

Start the sandbox first:
    uvicorn tableside.main:asgi_app --port 8888

Then run from project root:
    python scripts/simulate.py --tables 5
"""

import argparse
import asyncio
import os
import random
import sys
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tableside.core.config import EnvironmentMode, Settings, setup_logging
from tableside.engine import TableSession
from tableside.models import PaymentStep
from tableside.schemas import (
    AddCartItemRequest,
    DisplayStatus,
    ItemStatus,
    ModifierSelection,
)
from tableside.services.api.http import HttpOrderingAPI
from tableside.services.device_store import DeviceStore
from tableside.services.realtime.socketio_client import SocketIOTransport

# Configuration
SANDBOX_URL = "http://localhost:8888"
TENANT_ID = "sandbox-tenant"
TOTAL_TABLES = 5
DISPLAY_TIMEOUT = 20.0

MENU_ITEMS = [
    {"menu_item_id": "pho-bo", "name": "Pho Bo", "price": 55000},
    {"menu_item_id": "bun-cha", "name": "Bun Cha", "price": 50000},
    {"menu_item_id": "com-tam", "name": "Com Tam", "price": 45000},
    {"menu_item_id": "cha-gio", "name": "Cha Gio", "price": 35000},
    {"menu_item_id": "tra-da", "name": "Tra Da", "price": 5000},
]
SIZE_OPTIONS = [("regular", 0), ("large", 10000)]

KITCHEN_STEPS = [
    ItemStatus.ACCEPTED,
    ItemStatus.PREPARING,
    ItemStatus.READY,
    ItemStatus.SERVED,
]


def generate_random_items() -> list[AddCartItemRequest]:
    """Random cart lines; some share a menu item to exercise line merging."""
    items = []
    for _ in range(random.randint(1, 4)):
        menu_item = random.choice(MENU_ITEMS)
        option, price = random.choice(SIZE_OPTIONS)
        items.append(
            AddCartItemRequest(
                quantity=random.randint(1, 3),
                modifiers=[
                    ModifierSelection(
                        modifier_group_id="size",
                        modifier_option_id=option,
                        price=price,
                    )
                ],
                **menu_item,
            )
        )
    return items


def build_settings(base_url: str, data_dir: str) -> Settings:
    return Settings(
        env_mode=EnvironmentMode.STAGING,
        api_base_url=f"{base_url}/api/v1",
        realtime_url=base_url,
        data_directory=data_dir,
    )


async def wait_for_display(table: TableSession, order_id: str, status: DisplayStatus) -> bool:
    """Watch the tracker (not the server) until a realtime fetch or the fallback poll delivered status."""
    deadline = time.time() + DISPLAY_TIMEOUT
    while time.time() < deadline:
        display = table.orders.display(order_id)
        if display is not None and display.status == status:
            return True
        await asyncio.sleep(0.1)
    return False


# =============================================================================
# TABLE SIMULATION
# =============================================================================

async def run_table(
    staff: httpx.AsyncClient,
    base_url: str,
    table_num: int,
    data_root: str,
) -> dict[str, Any]:
    """One customer device at one table, from first cart line to payment."""
    table_id = f"table-{table_num}"
    settings = build_settings(base_url, os.path.join(data_root, table_id))
    api = HttpOrderingAPI(settings.api_base_url, timeout=settings.http_timeout_seconds)
    transport = SocketIOTransport(settings.realtime_url, namespace=settings.realtime_namespace)
    table = TableSession(
        TENANT_ID,
        table_id,
        api=api,
        transport=transport,
        store=DeviceStore(Path(settings.data_directory) / "device.json"),
        settings=settings,
    )
    start_time = time.time()
    result: dict[str, Any] = {"table": table_id, "success": False}

    try:
        await table.start()
        for item in generate_random_items():
            await table.add_to_cart(item)
        result["cart_total"] = table.cart.cart.total_price

        checkout = await table.checkout()
        if not checkout.success:
            result["error"] = checkout.error_message
            return result
        order = checkout.order
        result["order_id"] = order.id

        item_ids = [item.id for item in order.items]
        for status in KITCHEN_STEPS:
            await asyncio.sleep(random.uniform(0.2, 0.8))
            response = await staff.post(
                f"{base_url}/api/v1/staff/orders/{order.id}/items/status",
                json={"itemIds": item_ids, "status": status.value},
            )
            response.raise_for_status()

        if not await wait_for_display(table, order.id, DisplayStatus.READY):
            result["error"] = "order never reached READY"
            return result

        await table.open_payment(order.id)
        unsettled = await table.confirm_payment() == PaymentStep.BILL_UNSETTLED

        response = await staff.post(f"{base_url}/api/v1/payment/settle/{order.id}")
        response.raise_for_status()
        step = await table.retry_payment() if unsettled else table.payment.step
        if step != PaymentStep.BILL_READY:
            result["error"] = f"payment ended in {step.value}"
            return result

        result["bill_total"] = table.payment.bill.summary.total
        await table.payment.wait_for_handoff()
        result["fetches"] = table.scheduler.fetch_count
        result["success"] = table.payment.step == PaymentStep.DONE
        return result

    except httpx.HTTPError as e:
        result["error"] = str(e)[:100]
        return result
    finally:
        result["time"] = round(time.time() - start_time, 3)
        await table.close()
        await api.aclose()


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(base_url: str = SANDBOX_URL, num_tables: int = TOTAL_TABLES) -> dict[str, Any]:
    print("=" * 70)
    print("🍜 DINING ROOM SIMULATION")
    print("=" * 70)
    print(f"📋 Tables: {num_tables}")
    print(f"🎯 Target: {base_url}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    with tempfile.TemporaryDirectory(prefix="tableside-sim-") as data_root:
        async with httpx.AsyncClient(timeout=30.0) as staff:
            tasks = [run_table(staff, base_url, i + 1, data_root) for i in range(num_tables)]
            results = await asyncio.gather(*tasks)
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Paid Tables: {len(successful)}/{num_tables}")
    print(f"❌ Failed Tables: {len(failed)}/{num_tables}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        avg_fetches = round(sum(r["fetches"] for r in successful) / len(successful), 1)
        revenue = sum(r["bill_total"] for r in successful)
        print("\n📈 Metrics:")
        print(f"   Average Table Time: {avg_time}s")
        print(f"   Average Order Fetches: {avg_fetches} (for {len(KITCHEN_STEPS)} status waves)")
        print(f"   💰 Total Billed: {revenue:,.0f}")

    if failed:
        print("\n⚠️  Failed Table Details (showing first 5):")
        for f in failed[:5]:
            print(f"   {f['table']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_tables,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


async def check_sandbox(base_url: str) -> bool:
    """Pre-flight health check."""
    print("\n🧪 Sandbox Health Check...")
    async with httpx.AsyncClient(timeout=5.0) as client:
        try:
            response = await client.get(f"{base_url}/api/v1/health")
        except httpx.RequestError as e:
            print(f"   ❌ Unreachable: {e}")
            return False
    if response.status_code != 200:
        print(f"   ❌ Failed: {response.text[:100]}")
        return False
    data = response.json().get("data") or {}
    print(f"   ✅ Status: {data.get('status')} ({data.get('provider')})")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Dining Room Simulation Script")
    parser.add_argument("--url", default=SANDBOX_URL, help="Sandbox base URL")
    parser.add_argument("--tables", type=int, default=TOTAL_TABLES, help="Number of tables")
    parser.add_argument("--verbose", action="store_true", help="Show engine logs")
    args = parser.parse_args()

    if args.verbose:
        setup_logging()

    if not asyncio.run(check_sandbox(args.url)):
        print("\n❌ Sandbox not available. Start it with: uvicorn tableside.main:asgi_app --port 8888")
        sys.exit(1)

    asyncio.run(run_simulation(base_url=args.url, num_tables=args.tables))
