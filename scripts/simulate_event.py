"""
Send a test event through the ingestion or capture endpoint.

Usage:
    python scripts/simulate_event.py --token <payload>.<signature>
    python scripts/simulate_event.py --api-key DEMO_LANDING_KEY --event signup
    python scripts/simulate_event.py --token ... --count 20   # watch the burst limit trip
"""
import argparse
import asyncio
import logging
import uuid
from datetime import datetime, timezone

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def send_sdk_event(client: httpx.AsyncClient, token: str, event: str, user_id: str, session_id: str):
    payload = {
        "event": event,
        "ts": datetime.now(timezone.utc).isoformat(),
        "user_id": user_id,
        "session_id": session_id,
        "page": "https://example.com/pricing",
        "metadata": {"simulated": True},
    }
    resp = await client.post(
        f"{BASE_URL}/api/v1/ingest",
        json=payload,
        headers={"Authorization": f"Bearer {token}"},
    )
    logger.info(
        "Ingest response: %s %s (remaining=%s)",
        resp.status_code, resp.text, resp.headers.get("X-RateLimit-Remaining"),
    )
    return resp


async def send_capture_event(client: httpx.AsyncClient, api_key: str, event: str, user_id: str):
    payload = {
        "user_id": user_id,
        "event_type": event,
        "event_payload": {"simulated": True},
    }
    resp = await client.post(
        f"{BASE_URL}/api/v1/events/capture",
        json=payload,
        headers={"X-API-Key": api_key},
    )
    logger.info("Capture response: %s %s", resp.status_code, resp.text)
    return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate inbound events")
    parser.add_argument("--token", help="Ingestion token (SDK flow)")
    parser.add_argument("--api-key", help="Client app API key (capture flow)")
    parser.add_argument("--event", default="page_view")
    parser.add_argument("--user", default="u_simulated")
    parser.add_argument("--count", type=int, default=1)
    args = parser.parse_args()

    if not args.token and not args.api_key:
        parser.error("one of --token or --api-key is required")

    session_id = str(uuid.uuid4())
    async with httpx.AsyncClient(timeout=30) as client:
        for _ in range(args.count):
            if args.token:
                await send_sdk_event(client, args.token, args.event, args.user, session_id)
            else:
                await send_capture_event(client, args.api_key, args.event, args.user)


if __name__ == "__main__":
    asyncio.run(main())
