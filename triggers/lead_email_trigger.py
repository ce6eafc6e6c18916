"""
Sentinel Trigger — Lead emails (Gmail)
Polls the leads mailbox for portal inquiries, parses, classifies and
deduplicates them into leads / threads / messages.
Called by the scheduler every 5 minutes and by POST /api/leads/process.
"""
import argparse
import json
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional

# Ensure project root is on sys.path
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from config.settings import BatchConfig, config
from tools.ingest.classifier import classify
from tools.ingest.decoder import decode_message
from tools.ingest.models import BatchStats, LeadType
from tools.ingest.persister import Persister
from tools.ingest.router import ParserRouter
from triggers.errors import AuthError, ParseFailure, PersistenceError, RateLimitExceeded

logger = logging.getLogger("sentinel.trigger.leads")

CRITICAL_ERROR = "critical_error"
BATCH_IN_PROGRESS = "batch_in_progress"

# One batch per process; the scheduler's max_instances=1 covers its own runs
_batch_lock = threading.Lock()

_TYPE_COUNTERS = {
    LeadType.MISSED_CALL: "missed_calls",
    LeadType.TRADE_IN: "trade_ins",
    LeadType.FINANCIAL_LEAD: "financial_leads",
}


def failure(error_type: str, message: str) -> dict:
    return {"success": False, "errorType": error_type, "message": message}


class BatchOrchestrator:
    """
    Runs one batch: one search, then each candidate sequentially under a
    wall-clock budget and a message cap. Per-message failures are tallied
    and leave the email unread; only auth and search failures end the run.
    """

    def __init__(
        self,
        gmail,
        scanner,
        persister: Optional[Persister] = None,
        router: Optional[ParserRouter] = None,
        store=None,
        batch: Optional[BatchConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ):
        self.gmail = gmail
        self.scanner = scanner
        self.router = router or ParserRouter()
        self.batch = batch or config.batch
        self.persister = persister
        if self.persister is None and not dry_run:
            if store is None:
                from models.leads import LeadStore
                store = LeadStore()
            self.persister = Persister(store, gmail)
        self.clock = clock
        self.sleep = sleep
        self.dry_run = dry_run
        self.preview = []

    def run(self) -> dict:
        stats = BatchStats(max_error_details=self.batch.max_error_details)
        started = self.clock()

        try:
            result = self.scanner.scan()
            if not result.ok:
                return failure(result.error_type, result.error or "mailbox search failed")

            stats.candidates = len(result.message_refs)
            attempted = 0
            for ref in result.message_refs:
                if attempted >= self.batch.max_messages:
                    stats.stopped_early, stats.stop_reason = True, "max_messages"
                    break
                if attempted:
                    self.sleep(self.batch.fetch_delay_seconds)
                if self.clock() - started >= self.batch.time_budget_seconds:
                    stats.stopped_early, stats.stop_reason = True, "time_budget"
                    break
                attempted += 1
                self._process_one(ref["id"], stats)
        except AuthError as e:
            logger.error(f"Lead batch aborted, Gmail auth failed: {e}")
            return failure(CRITICAL_ERROR, str(e))

        stats.duration_seconds = self.clock() - started
        if stats.stopped_early:
            logger.info(
                f"Lead batch stopped early ({stats.stop_reason}); "
                f"{stats.candidates - attempted} left for the next run"
            )
        logger.info(
            f"Lead batch complete: {stats.processed} processed, {stats.created} created, "
            f"{stats.updated} updated, {stats.ignored} ignored, {stats.parse_errors} parse errors, "
            f"{stats.errors} errors, {stats.rate_limit_skipped} rate-limited"
        )
        out = {"success": True, **stats.to_dict()}
        if self.dry_run:
            out["dryRun"] = True
            out["preview"] = self.preview
        return out

    def _process_one(self, message_id: str, stats: BatchStats):
        source = "unknown"
        try:
            message = decode_message(self.gmail.get_message(message_id))
            source = self.router.route_for(message.sender).name
            record = self.router.parse(message)
            if record is None:
                raise ParseFailure(f"no lead fields found (subject: {message.subject[:80]!r})")
            source = record.source

            if record.is_ignored:
                logger.info(f"{message_id}: ignored ({record.type.value}: {record.ignore_reason})")
                stats.ignored += 1
                stats.bump_source(source, "ignored")
                if self.dry_run:
                    self.preview.append({"messageId": message_id, "record": record.to_dict()})
                elif not self.persister.mark_read(message_id):
                    stats.mark_read_failures += 1
                stats.processed += 1
                return

            classification = classify(record)
            if self.dry_run:
                self.preview.append({
                    "messageId": message_id,
                    "record": record.to_dict(),
                    "classification": vars(classification),
                })
                stats.processed += 1
                return

            resolution = self.persister.persist(message, record, classification)
            if resolution.match == "duplicate":
                stats.duplicates += 1
                stats.bump_source(source, "duplicates")
            else:
                if resolution.lead_created:
                    stats.created += 1
                    stats.bump_source(source, "created")
                else:
                    stats.updated += 1
                    stats.bump_source(source, "updated")
                counter = _TYPE_COUNTERS.get(record.type)
                if counter:
                    setattr(stats, counter, getattr(stats, counter) + 1)

            if not self.persister.mark_read(message_id):
                stats.mark_read_failures += 1
            stats.processed += 1

        except AuthError:
            raise
        except RateLimitExceeded as e:
            # expected backpressure; the message stays unread for the next run
            logger.warning(f"{message_id}: skipped, rate limited: {e}")
            stats.rate_limit_skipped += 1
        except ParseFailure as e:
            logger.warning(f"{message_id}: parse failed ({source}): {e}")
            stats.parse_errors += 1
            stats.bump_source(source, "parse_errors")
            stats.add_error(message_id, "parse", str(e))
        except PersistenceError as e:
            logger.error(f"{message_id}: persistence failed: {e}")
            stats.errors += 1
            stats.add_error(message_id, "persistence", str(e))
        except Exception as e:
            logger.error(f"{message_id}: processing failed: {type(e).__name__}: {e}")
            stats.errors += 1
            stats.add_error(message_id, type(e).__name__, str(e))


def process_lead_emails(dry_run: bool = False, **deps) -> dict:
    """
    Main entry point — called by the scheduler and the HTTP endpoint.
    Never raises; failures come back as {success: False, errorType, message}.
    """
    if not _batch_lock.acquire(blocking=False):
        logger.warning("Lead batch already running — skipping")
        return failure(BATCH_IN_PROGRESS, "another lead batch is still running")

    gmail = deps.pop("gmail", None)
    owns_gmail = gmail is None
    try:
        from triggers.gmail_client import GmailClient, MailboxScanner
        if gmail is None:
            gmail = GmailClient()
        scanner = deps.pop("scanner", None) or MailboxScanner(gmail)
        logger.info(f"Lead trigger: checking {config.gmail.mailbox}{' (dry run)' if dry_run else ''}")
        return BatchOrchestrator(gmail, scanner, dry_run=dry_run, **deps).run()
    except AuthError as e:
        logger.error(f"Lead trigger: Gmail auth failed: {e}")
        return failure(CRITICAL_ERROR, str(e))
    except Exception as e:
        logger.error(f"Lead trigger: unexpected failure: {type(e).__name__}: {e}")
        return failure(CRITICAL_ERROR, f"{type(e).__name__}: {e}")
    finally:
        if owns_gmail and gmail is not None:
            gmail.close()
        _batch_lock.release()


def run_lead_poll() -> dict:
    """Scheduler job wrapper; the result is logged and kept as the job's last run."""
    result = process_lead_emails()
    if not result.get("success"):
        logger.warning(f"Lead poll failed: {result.get('errorType')}: {result.get('message')}")
    return result


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )
    parser = argparse.ArgumentParser(description="Process unread lead emails once")
    parser.add_argument("--dry-run", action="store_true",
                        help="Parse and classify only; no database writes, nothing marked read")
    args = parser.parse_args()
    print(json.dumps(process_lead_emails(dry_run=args.dry_run), indent=2, default=str))
