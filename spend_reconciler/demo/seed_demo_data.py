# spend_reconciler/demo/seed_demo_data.py

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from spend_reconciler.core.resolution import day_key
from spend_reconciler.storage.db import DEFAULT_DB_PATH
from spend_reconciler.storage.models import PricingMode, RequestRecord, SchedulePeriod
from spend_reconciler.storage.repository import (
    SqliteBackend,
    initialize_schema,
    insert_request_records,
    record_tracked_spend,
    set_provider_budget,
    upsert_provider,
)

# provider -> (api key, requests per hour, tokens per request)
DEMO_PROVIDERS = {
    "alpha": ("team-key", 6, 1200),
    "alpha-mirror": ("team-key", 2, 900),
    "beta": ("beta-key", 5, 800),
    "gamma": ("gamma-key", 1, 3000),
    "delta": ("delta-key", 3, 1000),
    "omega": ("omega-key", 4, 1500),
}


def _demo_records(now: datetime) -> List[RequestRecord]:
    records = []
    start = now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=23)
    for hour in range(24):
        bucket = start + timedelta(hours=hour)
        # one busy hour to trip the spike detector
        burst = 8 if hour == 20 else 1
        for provider, (api_key_ref, per_hour, tokens) in DEMO_PROVIDERS.items():
            for i in range(per_hour * burst):
                ts = bucket + timedelta(seconds=i * 3600 // (per_hour * burst))
                if ts >= now:
                    continue
                records.append(RequestRecord(
                    timestamp=ts,
                    provider=provider,
                    api_key_ref=api_key_ref,
                    model="gpt-4o-mini" if i % 3 else "claude-3-haiku",
                    origin="windows" if i % 2 else "linux",
                    session_id=f"{provider}-{hour}",
                    input_tokens=tokens * 3 // 4,
                    output_tokens=tokens - tokens * 3 // 4,
                    total_tokens=tokens,
                ))
    return records


async def _configure_pricing(backend: SqliteBackend, now: datetime) -> None:
    package = SchedulePeriod(
        id="demo-package",
        mode=PricingMode.PACKAGE_TOTAL,
        amount_usd=30.0,
        api_key_ref="team-key",
        started_at=(now - timedelta(days=10)).replace(hour=0, minute=0, second=0, microsecond=0),
    )
    await backend.set_provider_timeline("alpha", [package])
    await backend.set_provider_timeline("alpha-mirror", [package])
    await backend.set_provider_manual_pricing("beta", PricingMode.PER_REQUEST, 0.004)
    await backend.set_provider_manual_pricing("gamma", PricingMode.PER_REQUEST, 0.08)
    await backend.set_provider_manual_pricing("delta", PricingMode.PER_REQUEST, 0.005)


def seed_demo_data(db_path: str = DEFAULT_DB_PATH, now: Optional[datetime] = None) -> int:
    """Insert a day of demo telemetry plus pricing settings.

    Returns:
        Number of request records inserted
    """
    now = now or datetime.now(timezone.utc)
    initialize_schema(db_path)
    for provider, (api_key_ref, _, _) in DEMO_PROVIDERS.items():
        upsert_provider(provider, api_key_ref, db_path)

    records = _demo_records(now)
    insert_request_records(records, db_path)

    record_tracked_spend("omega", day_key(now - timedelta(days=1)), 4.2, db_path)
    record_tracked_spend("omega", day_key(now), 1.35, db_path)
    set_provider_budget("omega", latest_day_spend_usd=4.2, token_rate_usd=0.000002, db_path=db_path)

    asyncio.run(_configure_pricing(SqliteBackend(db_path), now))
    return len(records)


if __name__ == "__main__":
    count = seed_demo_data()
    print(f"Demo usage data inserted ({count} requests)")
