"""
Rush Hour Simulation Script

Fires concurrent checkouts, payments and counter scans at a running API and
checks the two things that must never happen: stock going negative and a QR
token being redeemed twice.
Run from project root after scripts/seed.py: python scripts/simulate.py

Requires ENV_MODE=development so payments can be completed through the mock
gateway endpoint.
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from typing import Any, Optional

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50
SCANS_PER_TOKEN = 3

# Account ids created by scripts/seed.py
ADMIN_ID = 1
STUDENT_IDS = [2, 3, 4, 5]


def headers_for(account_id: int) -> dict[str, str]:
    return {"X-User-Id": str(account_id)}


def generate_random_cart(menu: list[dict]) -> list[dict]:
    """Pick 1-3 distinct items, biased towards the scarce ones."""
    weights = [1.0 / max(item["stock_count"], 1) for item in menu]
    picked = {}
    for _ in range(random.randint(1, 3)):
        item = random.choices(menu, weights=weights)[0]
        picked[item["id"]] = random.randint(1, 2)
    return [{"menu_item_id": item_id, "quantity": qty} for item_id, qty in picked.items()]


async def fetch_menu(client: httpx.AsyncClient) -> list[dict]:
    response = await client.get(f"{API_BASE_URL}/api/menu")
    response.raise_for_status()
    return response.json()["data"]


# =============================================================================
# SINGLE ORDER FLOW
# =============================================================================

async def place_and_pay(
    client: httpx.AsyncClient,
    order_num: int,
    menu: list[dict],
) -> dict[str, Any]:
    """Checkout, pay with the mock gateway and verify; returns the outcome."""
    student_id = random.choice(STUDENT_IDS)
    start_time = time.time()
    outcome: dict[str, Any] = {"order_num": order_num, "success": False, "token": None}

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders/checkout",
            json={"items": generate_random_cart(menu)},
            headers=headers_for(student_id),
            timeout=30.0,
        )
        if response.status_code != 201:
            outcome["error"] = f"checkout {response.status_code}: {response.json().get('message')}"
            return outcome
        data = response.json()["data"]
        outcome["degraded"] = data["degraded"]
        handle = data["payment_handle"]

        response = await client.post(f"{API_BASE_URL}/api/payments/mock/{handle}/complete")
        response.raise_for_status()
        confirmation = response.json()["data"]

        # Clients retry verification; a retry must not double-commit stock.
        responses = await asyncio.gather(*(
            client.post(
                f"{API_BASE_URL}/api/orders/verify",
                json=confirmation,
                headers=headers_for(student_id),
                timeout=30.0,
            )
            for _ in range(2)
        ))
        tokens = {
            r.json()["data"]["redemption_token"] for r in responses if r.status_code == 200
        }
        if not tokens:
            outcome["error"] = f"verify {responses[0].status_code}: {responses[0].json().get('message')}"
            return outcome
        if len(tokens) > 1:
            outcome["error"] = f"verify minted {len(tokens)} tokens"
            return outcome

        outcome.update(success=True, token=tokens.pop(), order_id=data["order"]["id"])
        return outcome
    except Exception as e:
        outcome["error"] = str(e)[:100]
        return outcome
    finally:
        outcome["time"] = round(time.time() - start_time, 3)


async def scan_repeatedly(client: httpx.AsyncClient, token: str) -> int:
    """Scan one token several times at once; returns how many scans succeeded."""
    responses = await asyncio.gather(*(
        client.patch(
            f"{API_BASE_URL}/api/orders/scan/{token}",
            headers=headers_for(ADMIN_ID),
            timeout=30.0,
        )
        for _ in range(SCANS_PER_TOKEN)
    ))
    return sum(1 for r in responses if r.status_code == 200)


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS) -> Optional[dict[str, Any]]:
    """
    Run the rush hour simulation.

    Args:
        num_orders: Number of concurrent orders to place
    """
    print("=" * 70)
    print("RUSH HOUR SIMULATION - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"Total Orders: {num_orders}")
    print(f"Target: {API_BASE_URL}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        menu = await fetch_menu(client)
        if not menu:
            print("Menu is empty. Run scripts/seed.py first.")
            return None
        stock_before = {item["id"]: item["stock_count"] for item in menu}

        print("\nFiring checkouts...\n")
        results = await asyncio.gather(
            *(place_and_pay(client, i + 1, menu) for i in range(num_orders))
        )

        successful = [r for r in results if r["success"]]
        print(f"Scanning {len(successful)} token(s) x{SCANS_PER_TOKEN}...\n")
        scan_counts = await asyncio.gather(
            *(scan_repeatedly(client, r["token"]) for r in successful)
        )

        stock_after = {item["id"]: item["stock_count"] for item in await fetch_menu(client)}

    total_time = round(time.time() - start_time, 2)
    failed = [r for r in results if not r["success"]]
    degraded = [r for r in results if r.get("degraded")]
    oversold = {item_id: count for item_id, count in stock_after.items() if count < 0}
    double_redeemed = sum(1 for count in scan_counts if count > 1)
    never_redeemed = sum(1 for count in scan_counts if count == 0)

    print("=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    print(f"\nPaid Orders: {len(successful)}/{num_orders}")
    print(f"Rejected Orders: {len(failed)}/{num_orders}")
    print(f"Degraded Checkouts: {len(degraded)}")
    print(f"Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print("\nPerformance Metrics:")
        print(f"   Average Flow: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")

    print("\nStock:")
    for item in menu:
        print(f"   {item['name']:<20} {stock_before[item['id']]:>4} -> {stock_after[item['id']]:>4}")

    if failed:
        print("\nRejected Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("\n" + "=" * 70)
    print("INVARIANT CHECKS")
    print("=" * 70)
    print(f"{'OK  ' if not oversold else 'FAIL'} No item oversold {oversold or ''}")
    print(f"{'OK  ' if not double_redeemed else 'FAIL'} No token redeemed twice ({double_redeemed})")
    print(f"{'OK  ' if not never_redeemed else 'FAIL'} Every paid token redeemed once ({never_redeemed} missed)")
    print("=" * 70)

    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "oversold": oversold,
        "double_redeemed": double_redeemed,
        "total_time": total_time,
    }


async def test_single_flow() -> bool:
    """Check the API is reachable and in development mode before the rush."""
    print("\n" + "=" * 70)
    print("PRE-FLIGHT CHECKS")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        print("\n1. Health Check...")
        response = await client.get(f"{API_BASE_URL}/health")
        if response.status_code != 200:
            print(f"   Failed: {response.text}")
            return False
        data = response.json()
        print(f"   Status: {data.get('status')}")
        print(f"   Database: {data.get('database')}")
        print(f"   Redis: {data.get('redis')}")

        print("\n2. Environment...")
        environment = (await client.get(f"{API_BASE_URL}/")).json().get("environment")
        print(f"   Mode: {environment}")
        if environment != "development":
            print("   Mock payments need ENV_MODE=development")
            return False

    print("\n" + "=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rush Hour Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--skip-checks", action="store_true", help="Skip pre-flight checks")
    args = parser.parse_args()

    if not args.skip_checks and not asyncio.run(test_single_flow()):
        print("\nPre-flight checks failed. Fix issues before running simulation.")
        sys.exit(1)

    report = asyncio.run(run_simulation(args.orders))
    if report and (report["oversold"] or report["double_redeemed"]):
        sys.exit(1)
