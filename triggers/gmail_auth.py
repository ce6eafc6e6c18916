"""
Lead Sentinel — Gmail service-account authentication.

Exchanges a signed JWT assertion (service account, domain-wide delegation,
impersonating the leads mailbox) for a short-lived bearer token.
google-auth builds and signs the assertion; we own the retry policy.
"""
import functools
import logging
import time
from typing import Callable, List, Optional

from google.auth.transport.requests import Request
from google.oauth2 import service_account

from config.settings import config
from triggers.errors import AuthError
from triggers.retry import RetryPolicy, call_with_retry

logger = logging.getLogger("sentinel.leads.gmail_auth")


class TokenProvider:
    """Caches one bearer token per process; refreshes it when expired."""

    def __init__(
        self,
        service_account_info: Optional[dict] = None,
        mailbox: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: Optional[float] = None,
    ):
        self._info = service_account_info
        self._mailbox = mailbox or config.gmail.mailbox
        self._scopes = scopes or config.gmail.scopes
        self._policy = policy or RetryPolicy(
            max_attempts=config.retry.token_max_attempts,
            backoff=config.retry.token_backoff,
        )
        self._sleep = sleep
        self._timeout = timeout or config.gmail.request_timeout
        self._credentials = None

    def _build_credentials(self):
        info = self._info
        if info is None:
            try:
                info = config.gmail.load_service_account()
            except ValueError as e:
                raise AuthError(f"Service account key is not valid JSON: {e}") from e
        if not info:
            raise AuthError(
                "Gmail service account not configured "
                "(set GOOGLE_SERVICE_ACCOUNT_KEY or GOOGLE_SERVICE_ACCOUNT_FILE)"
            )
        info = dict(info)
        # Keys pasted into env vars often carry literal \n sequences
        if "private_key" in info:
            info["private_key"] = info["private_key"].replace("\\n", "\n")
        info.setdefault("token_uri", config.gmail.token_uri)
        try:
            return service_account.Credentials.from_service_account_info(
                info, scopes=self._scopes, subject=self._mailbox,
            )
        except (ValueError, KeyError) as e:
            raise AuthError(f"Service account key rejected: {e}") from e

    def get_token(self) -> str:
        """Return a valid bearer token, exchanging a new assertion if needed."""
        if self._credentials is None:
            self._credentials = self._build_credentials()
        creds = self._credentials

        if creds.valid and creds.token:
            return creds.token

        def _exchange() -> str:
            # google-auth's own default is 120s
            creds.refresh(functools.partial(Request(), timeout=self._timeout))
            if not creds.token:
                raise AuthError("Token endpoint returned no access_token")
            return creds.token

        try:
            token = call_with_retry(
                _exchange, self._policy, sleep=self._sleep, label="Gmail token exchange",
            )
        except Exception as e:
            raise AuthError(f"Gmail token exchange failed: {e}") from e

        logger.info(f"Gmail: bearer token obtained for {self._mailbox}")
        return token

    def invalidate(self):
        """Drop the cached token (next call re-exchanges)."""
        self._credentials = None
