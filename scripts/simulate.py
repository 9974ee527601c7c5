"""
Concurrency Simulation Script

Fires many orders at one branch at the same time and checks that no two
of them received the same token, then walks one order through the
cancellation flow.
Run from project root: python scripts/simulate.py --tenant T --branch B --item I

The branch and menu item must already exist in the catalogue tables.
"""

import argparse
import asyncio
import random
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]


def generate_order_payload(branch_id: str, item_ids: list[str]) -> dict[str, Any]:
    """Random cart for one branch."""
    return {
        "branch_id": branch_id,
        "order_type": random.choice(["DINE_IN", "TAKEAWAY"]),
        "customer_name": random.choice(FIRST_NAMES),
        "customer_phone": f"555-{random.randint(100, 999)}-{random.randint(1000, 9999)}",
        "lines": [
            {"menu_item_id": random.choice(item_ids), "quantity": random.randint(1, 3)}
            for _ in range(random.randint(1, 4))
        ],
    }


async def send_order(
    client: httpx.AsyncClient,
    tenant_id: str,
    payload: dict[str, Any],
    order_num: int,
) -> dict[str, Any]:
    """Place one order and record the token it got."""
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/tenants/{tenant_id}/orders",
            json=payload,
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            data = response.json()
            return {
                "order_num": order_num,
                "success": True,
                "order_id": data["id"],
                "token": data["token_number"],
                "total": float(data["total_amount"]),
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


async def run_simulation(
    tenant_id: str,
    branch_id: str,
    item_ids: list[str],
    num_orders: int = TOTAL_ORDERS,
) -> dict[str, Any]:
    """Place num_orders orders concurrently and verify token uniqueness."""
    print("=" * 70)
    print("CONCURRENT ORDER SIMULATION")
    print("=" * 70)
    print(f"Total Orders: {num_orders}")
    print(f"Target: {API_BASE_URL}")
    print(f"Branch: {branch_id}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        tasks = [
            send_order(client, tenant_id, generate_order_payload(branch_id, item_ids), i + 1)
            for i in range(num_orders)
        ]
        results = await asyncio.gather(*tasks)
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print(f"\nSuccessful Orders: {len(successful)}/{num_orders}")
    print(f"Failed Orders: {len(failed)}/{num_orders}")
    print(f"Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"Average Response: {avg_time}s")
        print(f"Total Revenue: {sum(r['total'] for r in successful):.2f}")

    tokens = Counter(r["token"] for r in successful if r["token"] is not None)
    duplicates = {token: count for token, count in tokens.items() if count > 1}
    if duplicates:
        # Expected only when more orders were placed than the range holds
        print(f"\nDUPLICATE TOKENS: {duplicates}")
    else:
        print(f"\nTokens unique: {len(tokens)} issued")

    if failed:
        print("\nFailed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "duplicate_tokens": duplicates,
        "total_time": total_time,
        "results": results,
    }


async def run_cancellation_flow(tenant_id: str, order_id: str) -> None:
    """Start preparing an order, request cancellation and reject it."""
    base = f"{API_BASE_URL}/api/tenants/{tenant_id}/orders/{order_id}"
    async with httpx.AsyncClient() as client:
        response = await client.post(f"{base}/transitions", json={"target": "PREPARING"})
        print(f"PREPARING: {response.status_code}")

        response = await client.post(f"{base}/cancellation", json={"requested_by": "simulation"})
        data = response.json()
        print(f"Cancellation requested: {data.get('status')} until {data.get('cancellation_expires_at')}")

        response = await client.post(f"{base}/cancellation/resolve", json={"accept": False})
        print(f"Rejected, back to: {response.json().get('status')}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent order simulation")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--branch", required=True, help="Branch id")
    parser.add_argument("--item", action="append", required=True, help="Menu item id (repeatable)")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--skip-cancellation", action="store_true", help="Skip cancellation flow")
    args = parser.parse_args()

    outcome = asyncio.run(run_simulation(args.tenant, args.branch, args.item, args.orders))

    placed = [r for r in outcome["results"] if r["success"]]
    if placed and not args.skip_cancellation:
        asyncio.run(run_cancellation_flow(args.tenant, placed[0]["order_id"]))

    sys.exit(1 if outcome["duplicate_tokens"] or outcome["failed"] else 0)
