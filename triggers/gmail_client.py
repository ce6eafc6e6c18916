"""
Lead Sentinel — Gmail REST client + mailbox scanner.

Every call goes through GmailClient.request(), which backs off on 429 and on
quota-flavoured 403s (Retry-After first, then a fixed ladder) and on
network errors. Any other non-2xx response is handed back to the caller.
"""
import logging
import re
import time
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx

from config.settings import config
from tools.ingest.models import SearchResult
from triggers.errors import GmailApiError, RateLimitExceeded, SearchError
from triggers.gmail_auth import TokenProvider
from triggers.retry import RetryPolicy, call_with_retry

logger = logging.getLogger("sentinel.leads.gmail")

# Gmail reports per-user quota exhaustion as 403 with one of these reasons
_RATE_LIMIT_BODY = re.compile(
    r"rate\s*limit|ratelimitexceeded|limit\s*exceeded|quota|too many (concurrent )?requests",
    re.IGNORECASE,
)


def _parse_retry_after(value: Optional[str], cap: float) -> Optional[float]:
    """Retry-After as seconds (delta or HTTP-date), capped. None if absent/garbled."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, min(seconds, cap))


def is_rate_limited(resp: httpx.Response) -> bool:
    if resp.status_code == 429:
        return True
    return resp.status_code == 403 and bool(_RATE_LIMIT_BODY.search(resp.text or ""))


class GmailClient:
    """Gmail API wrapper for the single leads mailbox."""

    def __init__(
        self,
        tokens: Optional[TokenProvider] = None,
        http: Optional[httpx.Client] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._tokens = tokens or TokenProvider()
        self._client = http or httpx.Client(
            base_url=config.gmail.api_base,
            timeout=config.gmail.request_timeout,
        )
        self._policy = policy or RetryPolicy(
            max_attempts=config.retry.http_max_attempts,
            backoff=config.retry.http_backoff,
        )
        self._sleep = sleep
        self._retry_after_cap = config.retry.retry_after_cap

    # -------------------------------------------------------
    # Retrying transport
    # -------------------------------------------------------

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Make an API request with rate-limit-aware backoff.
        Returns the final response for any non-rate-limited status.
        Raises RateLimitExceeded or httpx.TransportError after retries,
        AuthError immediately.
        """

        def _attempt() -> httpx.Response:
            headers = {"Authorization": f"Bearer {self._tokens.get_token()}"}
            resp = self._client.request(method, path, headers=headers, **kwargs)
            if is_rate_limited(resp):
                retry_after = _parse_retry_after(
                    resp.headers.get("Retry-After"), self._retry_after_cap,
                )
                raise RateLimitExceeded(
                    f"Gmail {resp.status_code} rate limited on {method} {path}",
                    retry_after=retry_after,
                )
            return resp

        return call_with_retry(
            _attempt,
            self._policy,
            retryable=lambda e: isinstance(e, (RateLimitExceeded, httpx.TransportError)),
            delay_hint=lambda e: getattr(e, "retry_after", None),
            sleep=self._sleep,
            label=f"Gmail {method} {path}",
        )

    def _json_or_raise(self, resp: httpx.Response, what: str) -> dict:
        if resp.status_code >= 400:
            raise GmailApiError(
                f"Gmail {what} → {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp.json()

    # -------------------------------------------------------
    # Operations
    # -------------------------------------------------------

    def search(self, query: str, max_results: int) -> List[dict]:
        """One page of message refs ({id, threadId}) matching the query."""
        resp = self.request(
            "GET", "/messages", params={"q": query, "maxResults": max_results},
        )
        data = self._json_or_raise(resp, "messages.list")
        return data.get("messages", [])[:max_results]

    def get_message(self, message_id: str) -> dict:
        resp = self.request("GET", f"/messages/{message_id}", params={"format": "full"})
        return self._json_or_raise(resp, f"messages.get {message_id}")

    def mark_read(self, message_id: str):
        resp = self.request(
            "POST", f"/messages/{message_id}/modify",
            json={"removeLabelIds": ["UNREAD"]},
        )
        self._json_or_raise(resp, f"messages.modify {message_id}")
        logger.debug(f"Marked {message_id} as read")

    def close(self):
        self._client.close()


class MailboxScanner:
    """Builds the candidate search and runs it once per invocation."""

    def __init__(
        self,
        gmail: GmailClient,
        mailbox: Optional[str] = None,
        sender_domains: Optional[List[str]] = None,
        excluded_subjects: Optional[List[str]] = None,
        window: Optional[str] = None,
        batch_size: Optional[int] = None,
    ):
        self._gmail = gmail
        self._mailbox = mailbox or config.gmail.mailbox
        self._domains = sender_domains if sender_domains is not None else config.gmail.allowed_sender_domains
        self._excluded = excluded_subjects if excluded_subjects is not None else config.gmail.excluded_subjects
        self._window = window or config.gmail.search_window
        self._batch_size = batch_size or config.gmail.batch_size

    def build_query(self) -> str:
        parts = ["is:unread", self._window, f"to:{self._mailbox}"]
        if self._domains:
            parts.append("(" + " OR ".join(f"from:{d}" for d in self._domains) + ")")
        for subject in self._excluded:
            parts.append(f'-subject:"{subject}"')
        return " ".join(parts)

    def scan(self) -> SearchResult:
        """
        Run the search. Definitive failures come back as a failed
        SearchResult tagged by cause; AuthError still propagates.
        """
        query = self.build_query()
        logger.info(f"Lead search: {query} (max {self._batch_size})")
        try:
            refs = self._gmail.search(query, self._batch_size)
        except RateLimitExceeded as e:
            logger.warning(f"Lead search rate limited: {e}")
            return SearchResult(ok=False, error_type=SearchError.RATE_LIMIT, error=str(e), query=query)
        except httpx.TimeoutException as e:
            logger.error(f"Lead search timed out: {e}")
            return SearchResult(ok=False, error_type=SearchError.TIMEOUT, error=str(e), query=query)
        except (httpx.TransportError, GmailApiError) as e:
            logger.error(f"Lead search failed: {e}")
            return SearchResult(ok=False, error_type=SearchError.GENERIC, error=str(e), query=query)

        logger.info(f"Lead search: {len(refs)} candidate(s)")
        return SearchResult(ok=True, message_refs=refs, query=query)
