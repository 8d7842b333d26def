"""
Synthetic Forum Traffic
Drives concurrent capture sessions against a running analytics API.

Usage:
    python scripts/simulate_traffic.py --tenant 7 --sessions 50
    python scripts/simulate_traffic.py --base-url http://localhost:8000/api
"""

import argparse
import asyncio
import random
import sys
from pathlib import Path

from faker import Faker

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.capture import CaptureClient, HttpTransport, SeenBeforeStore  # noqa: E402

fake = Faker()
random.seed(42)
Faker.seed(42)

CONTENT_TYPES = ["question", "answer", "thread", "article"]
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148",
    "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.0 Safari/604.1",
    "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Linux; Android 13; SM-S911B) AppleWebKit/537.36 (KHTML, like Gecko) SamsungBrowser/23.0 Chrome/115.0 Mobile Safari/537.36",
]
REFERRERS = ["https://www.google.com/", "https://news.ycombinator.com/", "https://www.reddit.com/r/selfhosted/", None]


# ==========================================
# ONE VISITOR SESSION
# ==========================================
async def simulate_session(tenant_id: int, transport: HttpTransport) -> None:
    client = CaptureClient(
        tenant_id=tenant_id,
        transport=transport,
        seen_before=SeenBeforeStore(),
        user_agent=random.choice(USER_AGENTS),
        location=fake.country_code(),
    )
    client.initialize(f"/forum/{tenant_id}", referrer=random.choice(REFERRERS))

    for _ in range(random.randint(0, 6)):
        await asyncio.sleep(random.uniform(0.05, 0.3))
        content_type = random.choice(CONTENT_TYPES)
        content_id = random.randint(1, 200)
        client.record_page_view(f"/forum/{tenant_id}/{content_type}/{content_id}/{fake.slug()}")
        client.record_content_view(content_type, content_id, title=fake.sentence(nb_words=6))

        roll = random.random()
        if roll < 0.3:
            client.record_content_click(content_type, content_id)
        elif roll < 0.4:
            client.record_social_share(content_type, content_id, platform=random.choice(["twitter", "reddit"]))
        elif roll < 0.5:
            client.record_search(fake.words(nb=random.randint(1, 3))[0], results_count=random.randint(0, 40))
        elif roll < 0.55:
            client.record_form_submission("signup", form_id=1)
            client.record_conversion("signup", content_type=content_type, content_id=content_id)

    await client.close()


async def run(tenant_id: int, sessions: int, concurrency: int, base_url: str) -> None:
    transport = HttpTransport(base_url=base_url)
    semaphore = asyncio.Semaphore(concurrency)

    async def bounded() -> None:
        async with semaphore:
            await simulate_session(tenant_id, transport)

    print(f"📊 Simulating {sessions:,} sessions for tenant {tenant_id}...")
    await asyncio.gather(*(bounded() for _ in range(sessions)))
    await transport.aclose()
    print(f"   ✅ done ({transport.failures} delivery failures)")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Forum analytics traffic simulator")
    parser.add_argument("--tenant", type=int, default=1, help="Tenant (forum) id")
    parser.add_argument("--sessions", type=int, default=20, help="Number of visitor sessions")
    parser.add_argument("--concurrency", type=int, default=10, help="Sessions running at once")
    parser.add_argument("--base-url", default="http://localhost:8000/api", help="Ingestion API base URL")
    args = parser.parse_args()

    asyncio.run(run(args.tenant, args.sessions, args.concurrency, args.base_url))
