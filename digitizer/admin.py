"""
Read and maintenance operations on digitizations, plus the `digitizer-admin` CLI.

Examples:
  digitizer-admin submit https://example.com/page.png --target-language fr --hints en,hi
  digitizer-admin submit https://example.com/page.png --copy
  digitizer-admin upload ./scan.jpg
  digitizer-admin get 3f2c...
  digitizer-admin list --status failed --page 2 --limit 20
  digitizer-admin delete 3f2c...
  digitizer-admin dlq-list
  digitizer-admin dlq-drain
  digitizer-admin dlq-purge 3f2c...
  digitizer-admin counts
"""

import argparse
import asyncio
import json
import logging
import math
import os
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from digitizer.adapters.record_store import WorkRecordStore
from digitizer.dead_letter import DeadLetterRouter
from digitizer.errors import DigitizerError, InfraConnectError, NotFoundError, http_status_for
from digitizer.job_queue import DurableQueue
from digitizer.json_logging import configure_json_logging, level_from_name
from digitizer.startup_env import load_settings
from digitizer.utils.redis_safe import connect_redis
from digitizer.producer import DigitizationProducer
from digitizer.worker_loop import build_producer, build_queues

logger = logging.getLogger("digitizer.admin")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def normalize_pagination(page: Any = None, limit: Any = None) -> tuple[int, int]:
    """page < 1 becomes 1; limit < 1 becomes 10; limit > 100 becomes 100."""
    page = DEFAULT_PAGE if page is None else int(page)
    limit = DEFAULT_LIMIT if limit is None else int(limit)
    if page < 1:
        page = DEFAULT_PAGE
    if limit < 1:
        limit = DEFAULT_LIMIT
    if limit > MAX_LIMIT:
        limit = MAX_LIMIT
    return page, limit


class DigitizationAdmin:
    def __init__(self, queue: DurableQueue, record_store: WorkRecordStore, dead_letters: DeadLetterRouter):
        self.queue = queue
        self.records = record_store
        self.dead_letters = dead_letters

    async def get_record(self, record_id: str) -> Dict[str, Any]:
        record = await self.records.require(record_id)
        return record.to_dict()

    async def list_records(self, status: Optional[str] = None, page: Any = None, limit: Any = None) -> Dict[str, Any]:
        page, limit = normalize_pagination(page, limit)
        records, total = await self.records.list_records(status=status, offset=(page - 1) * limit, limit=limit)
        total_pages = math.ceil(total / limit)
        filters = {"status": status} if status else {}
        return {
            "jobs": [record.to_dict() for record in records],
            "pagination": {
                "totalJobs": total,
                "totalPages": total_pages,
                "currentPage": page,
                "hasNextPage": page < total_pages,
                "hasPreviousPage": page > 1,
                "appliedFilters": filters,
            },
        }

    async def delete_digitization(self, record_id: str) -> Dict[str, str]:
        """
        Remove the job and its record.

        An active job raises ConflictError and nothing is deleted. Raises
        NotFoundError only when neither the job nor the record existed.
        """
        job_removed = False
        if await self.queue.get_job(record_id) is not None:
            await self.queue.remove(record_id)
            job_removed = True

        record_deleted = await self.records.delete(record_id)
        if not job_removed and not record_deleted:
            raise NotFoundError("Digitization", record_id)

        logger.info("admin_digitization_deleted record_id=%s job_removed=%s", record_id, job_removed)
        return {"digitizationId": record_id}

    async def list_dead_letters(self, offset: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        entries = await self.dead_letters.list_entries(offset=offset, limit=limit)
        return [entry.to_dict() for entry in entries]

    async def drain_dead_letter(self) -> Optional[Dict[str, Any]]:
        entry = await self.dead_letters.drain_next()
        return entry.to_dict() if entry is not None else None

    async def purge_dead_letter(self, job_id: str) -> Dict[str, str]:
        await self.dead_letters.purge(job_id)
        return {"purged": job_id}

    async def counts(self) -> Dict[str, Dict[str, int]]:
        return {
            self.queue.name: await self.queue.counts(),
            self.dead_letters.dlq.name: await self.dead_letters.dlq.counts(),
        }


# =========================================================
# CLI
# =========================================================
def _add_language_options(cmd: argparse.ArgumentParser) -> None:
    cmd.add_argument("--target-language", default=None)
    cmd.add_argument("--hints", default=None, help="Comma separated OCR language hints")


def _split_hints(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    return [h.strip() for h in raw.split(",") if h.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="digitizer-admin",
        description="Inspect and maintain digitization jobs and the dead letter queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    submit_cmd = sub.add_parser("submit", help="Queue a digitization for an image URL")
    submit_cmd.add_argument("image_url")
    submit_cmd.add_argument("--copy", action="store_true", help="Copy the image into the bucket first")
    _add_language_options(submit_cmd)

    upload_cmd = sub.add_parser("upload", help="Upload a local image and queue its digitization")
    upload_cmd.add_argument("path")
    _add_language_options(upload_cmd)

    get_cmd = sub.add_parser("get", help="Show one digitization")
    get_cmd.add_argument("record_id")

    list_cmd = sub.add_parser("list", help="List digitizations, newest first")
    list_cmd.add_argument("--status", choices=["pending", "processing", "completed", "failed"])
    list_cmd.add_argument("--page", type=int, default=DEFAULT_PAGE)
    list_cmd.add_argument("--limit", type=int, default=DEFAULT_LIMIT)

    delete_cmd = sub.add_parser("delete", help="Delete a digitization and its job")
    delete_cmd.add_argument("record_id")

    dlq_list = sub.add_parser("dlq-list", help="List dead letter entries")
    dlq_list.add_argument("--offset", type=int, default=0)
    dlq_list.add_argument("--limit", type=int, default=50)

    sub.add_parser("dlq-drain", help="Acknowledge the oldest dead letter entry")

    dlq_purge = sub.add_parser("dlq-purge", help="Delete one dead letter entry")
    dlq_purge.add_argument("job_id")

    sub.add_parser("counts", help="Job counts per state for the queue and the DLQ")
    return parser


async def run_command(
    admin: DigitizationAdmin,
    args: argparse.Namespace,
    producer: Optional[DigitizationProducer] = None,
) -> Any:
    if args.command in ("submit", "upload"):
        if producer is None:
            raise RuntimeError("no producer configured")
        hints = _split_hints(args.hints)
        if args.command == "upload":
            with open(args.path, "rb") as fh:
                image_bytes = fh.read()
            record_id = await producer.digitize_upload(image_bytes, args.target_language, hints)
        elif args.copy:
            record_id = await producer.digitize_by_url(args.image_url, args.target_language, hints)
        else:
            record_id = await producer.submit(args.image_url, args.target_language, hints)
        return {"digitizationId": record_id}
    if args.command == "get":
        return await admin.get_record(args.record_id)
    if args.command == "list":
        return await admin.list_records(status=args.status, page=args.page, limit=args.limit)
    if args.command == "delete":
        return await admin.delete_digitization(args.record_id)
    if args.command == "dlq-list":
        return await admin.list_dead_letters(offset=args.offset, limit=args.limit)
    if args.command == "dlq-drain":
        return await admin.drain_dead_letter()
    if args.command == "dlq-purge":
        return await admin.purge_dead_letter(args.job_id)
    if args.command == "counts":
        return await admin.counts()
    raise ValueError(f"Unknown command: {args.command}")


async def _main_async(args: argparse.Namespace) -> int:
    settings = load_settings()
    redis_client = await connect_redis(settings.redis_url, client_name="digitizer-admin")
    try:
        queue, dlq = build_queues(settings, redis_client)
        admin = DigitizationAdmin(queue, WorkRecordStore(redis_client), DeadLetterRouter(dlq))
        try:
            result = await run_command(admin, args, build_producer(settings, redis_client))
        except DigitizerError as exc:
            print(json.dumps({"error": exc.message, "status": http_status_for(exc.kind)}, ensure_ascii=False))
            return 1
        print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
        return 0
    finally:
        await redis_client.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))
    configure_json_logging(service="digitizer-admin", level=level_from_name(os.getenv("LOG_LEVEL", "WARNING")))
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main_async(args))
    except InfraConnectError as exc:
        logger.error("admin_infra_unreachable error=%s", exc.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
