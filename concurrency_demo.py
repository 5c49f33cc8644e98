"""Simple concurrency demo that calls /match/trigger concurrently against the ASGI app.
Every call targets the same commute date; only one ride is ever formed per
opt-in no matter how the calls interleave.
This runs in-process and doesn't require the server to be started separately.
Run: python sample_data.py && python concurrency_demo.py
"""
import asyncio
from datetime import timedelta

import httpx

from db import utc_now
from main import app


async def run():
    commute_date = (utc_now().date() + timedelta(days=1)).isoformat()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        tasks = [client.post("/match/trigger", json={"date": commute_date}) for _ in range(10)]
        res = await asyncio.gather(*tasks)
        for r in res:
            body = r.json()
            print(r.status_code, {k: body.get(k) for k in ("processed", "created", "skipped", "errors")})


if __name__ == "__main__":
    asyncio.run(run())
