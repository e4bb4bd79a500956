# User value: This file lets deploy tooling check that the worker can reach Redis and storage before sending work.
import asyncio
import json
import os
import sys

import redis.asyncio as aioredis
from dotenv import load_dotenv

from digitizer.utils.gcs import GcsImageStorage, build_client


async def _check_redis(redis_url: str) -> str:
    rc = aioredis.from_url(redis_url, decode_responses=True, socket_connect_timeout=2)
    try:
        await rc.ping()
        return "ok"
    except Exception as exc:
        return f"error:{exc.__class__.__name__}"
    finally:
        await rc.aclose()


def _check_gcs(bucket_name: str, credentials_b64: str) -> str:
    try:
        client = build_client(credentials_b64 or None)
        if bucket_name and not GcsImageStorage(bucket_name, client=client).bucket_exists():
            return "error:BucketNotFound"
        return "ok"
    except Exception as exc:
        return f"error:{exc.__class__.__name__}"


async def check_async() -> dict:
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    bucket_name = os.getenv("GCS_BUCKET_NAME", "")
    credentials_b64 = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON", "")

    checks = {
        "redis": await _check_redis(redis_url),
        "gcs": await asyncio.to_thread(_check_gcs, bucket_name, credentials_b64),
    }
    status = "ok" if all(value == "ok" for value in checks.values()) else "degraded"
    return {"status": status, "checks": checks}


def check() -> dict:
    return asyncio.run(check_async())


def main() -> int:
    load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))
    payload = check()
    print(json.dumps(payload, ensure_ascii=False))
    return 0 if payload["status"] == "ok" else 1


if __name__ == "__main__":
    sys.exit(main())
