"""Async load generator for the guest booking endpoint."""

import argparse
import asyncio
import random
import statistics
import time
from datetime import date, timedelta
from uuid import uuid4

import httpx


async def fetch_slots(client: httpx.AsyncClient, base_url: str, day: date) -> list[dict]:
    resp = await client.get(f"{base_url}/slots", params={"service_type": "LAUNDRY", "date": day.isoformat()})
    resp.raise_for_status()
    return resp.json()


async def send_one(client: httpx.AsyncClient, base_url: str, slot: dict, idx: int):
    """Send one guest booking and return (status_code, latency_ms)."""

    started = time.perf_counter()
    payload = {
        "service_type": "LAUNDRY",
        "service_category": "washFold",
        "estimated_amount_cents": random.randint(1500, 9000),
        "payment_method_id": "pm_card_visa",
        "slot": {"partner_id": slot["partner_id"], "slot_start": slot["slot_start"], "slot_end": slot["slot_end"]},
        "address": {"line1": f"{idx} Load St", "city": "New York", "zip": "10001"},
        "guest_name": f"Load Guest {idx}",
        "guest_email": f"load-{idx}@example.com",
        "guest_phone": f"+1555{idx % 10_000_000:07d}",
    }
    try:
        resp = await client.post(
            f"{base_url}/payments/setup",
            json=payload,
            headers={"idempotency-key": str(uuid4()), "x-trace-id": uuid4().hex},
        )
        latency = (time.perf_counter() - started) * 1000
        return resp.status_code, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, latency


async def run(total: int, concurrency: int, base_url: str, days_ahead: int):
    """Execute a bounded-concurrency load run and print summary stats."""

    sem = asyncio.Semaphore(concurrency)
    results = []

    async with httpx.AsyncClient(timeout=30.0) as client:
        slots = await fetch_slots(client, base_url, date.today() + timedelta(days=days_ahead))
        if not slots:
            print("no available slots for the chosen day")
            return

        async def worker(i: int):
            async with sem:
                return await send_one(client, base_url, slots[i % len(slots)], i)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = [c for c, _ in results]
    lats = [latency for _, latency in results]
    success = sum(1 for c in codes if 200 <= c < 300)
    full = sum(1 for c in codes if c == 409)
    errors = total - success

    def pct(values, p):
        if not values:
            return 0.0
        idx = min(len(values) - 1, max(0, int((p / 100.0) * len(values)) - 1))
        return sorted(values)[idx]

    print(f"total={total}")
    print(f"success={success}")
    print(f"slot_full={full}")
    print(f"errors={errors}")
    print(f"error_rate={(errors / total) * 100:.2f}%")
    print(f"p50_ms={pct(lats, 50):.2f}")
    print(f"p95_ms={pct(lats, 95):.2f}")
    print(f"p99_ms={pct(lats, 99):.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=200)
    parser.add_argument("--concurrency", type=int, default=20)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--days-ahead", type=int, default=2)
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.days_ahead))
