"""
examples/simulate_call.py: Simulated PBX trigger

1. Checks the relay is up and lists the extensions currently connected
2. Fires one call-answered trigger at /notify, the way the PBX does
3. Prints the outcome and the latest audit rows

Usage:
    python -m examples.simulate_call --agent 101 --customer 12345 --phone 5551234567

Run this AFTER starting the server (and an agent, to see a delivery):
    CALLRELAY_SECRET=... callrelay
    callrelay-agent
"""
import argparse
import asyncio
import csv
import io
import re

import httpx

BASE_URL = "http://127.0.0.1:3000"


async def main(base_url: str, agent: str, customer: str, phone: str):
    async with httpx.AsyncClient(base_url=base_url, timeout=10) as client:
        r = await client.get("/health")
        if r.status_code != 200:
            print(f"[PBX] Relay not healthy: {r.status_code} {r.text}"); return
        print(f"[PBX] Connected extensions: {', '.join(r.json()['connectedOperators']) or 'none'}")

        r = await client.get("/notify", params={"agent": agent, "customerID": customer, "phone": phone})
        result = re.search(r"Result: (\w+)", r.text)
        print(f"[PBX] /notify -> HTTP {r.status_code}, {result.group(1) if result else 'unknown'}")

        r = await client.get("/calls.csv", params={"limit": 5})
        for row in csv.DictReader(io.StringIO(r.text)):
            print(f"  {row['Timestamp']}  ext={row['Agent'] or '-':>5}  "
                  f"connected={row['ExtensionConnected']:<3}  {row['Result']}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", default=BASE_URL)
    parser.add_argument("--agent", default="101")
    parser.add_argument("--customer", default="12345")
    parser.add_argument("--phone", default="5551234567")
    args = parser.parse_args()
    asyncio.run(main(args.url, args.agent, args.customer, args.phone))
