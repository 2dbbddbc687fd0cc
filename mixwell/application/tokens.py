import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, TypeVar

from mixwell.application.locks import KeyedLocks
from mixwell.domain.entities import PlatformAccount, PlatformKind, TokenRecord
from mixwell.domain.errors import AuthExpired, ReauthRequired
from mixwell.domain.ports import Store, TokenRefresher


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Holds and refreshes platform credentials.

    Records are keyed by the connected platform account
    (``account.external_account_id`` + platform). Refresh is serialized per
    key: when several callers see the same rejected token only the first one
    exchanges the refresh token, the others pick up the record it saved.
    """

    def __init__(self,
                 store: Store,
                 refreshers: Optional[Dict[PlatformKind, TokenRefresher]] = None,
                 expiry_skew: timedelta = timedelta(seconds=60),
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.refreshers = dict(refreshers or {})
        self.expiry_skew = expiry_skew
        self.clock = clock
        self._locks = KeyedLocks()

    def _key(self, account: PlatformAccount) -> str:
        return f"{account.kind.value}:{account.external_account_id}"

    def _load(self, account: PlatformAccount) -> TokenRecord:
        record = self.store.load_token_record(account.external_account_id, account.kind)
        if record is None:
            raise ReauthRequired(account.external_account_id, account.kind.value,
                                 f"No {account.kind.value} credentials stored for {account.external_account_id}")
        return record

    def connect(self, record: TokenRecord) -> TokenRecord:
        """Store credentials obtained from a completed platform connection."""
        if record.updated_at is None:
            record = replace(record, updated_at=self.clock())
        self.store.save_token_record(record)
        logger.info(f"Stored {record.platform.value} credentials for {record.owner_id}")
        return record

    def current(self, account: PlatformAccount) -> TokenRecord:
        """Current credentials, refreshed first when they are about to expire."""
        record = self._load(account)
        if record.expires_at is not None and record.expires_at - self.clock() <= self.expiry_skew:
            logger.info(f"{account.kind.value} token for {account.external_account_id} is expiring, refreshing")
            return self._refresh(account, record.access_token)
        return record

    def call(self, account: PlatformAccount, fn: Callable[[TokenRecord], T]) -> T:
        """Run a platform call with the account's credentials.

        On AuthExpired the credential is refreshed once and the call retried.
        A second rejection, or a failed refresh, raises ReauthRequired.
        """
        record = self.current(account)
        try:
            return fn(record)
        except AuthExpired:
            logger.warning(f"{account.kind.value} rejected credentials for {account.external_account_id}, refreshing")

        record = self._refresh(account, record.access_token)
        try:
            return fn(record)
        except AuthExpired as e:
            raise ReauthRequired(account.external_account_id, account.kind.value,
                                 "Credentials rejected again after refresh") from e

    def _refresh(self, account: PlatformAccount, stale_access_token: str) -> TokenRecord:
        with self._locks.hold(self._key(account)):
            record = self._load(account)
            if record.access_token != stale_access_token:
                # Another caller refreshed while we waited
                return record

            refresher = self.refreshers.get(account.kind)
            if refresher is None or not record.refresh_token:
                raise ReauthRequired(account.external_account_id, account.kind.value,
                                     f"{account.kind.value} credentials cannot be refreshed programmatically")

            try:
                refreshed = refresher.refresh(record)
            except ReauthRequired:
                raise
            except Exception as e:
                logger.error(f"Failed to refresh {account.kind.value} token: {e}")
                raise ReauthRequired(account.external_account_id, account.kind.value, str(e)) from e

            if refreshed.updated_at is None:
                refreshed = replace(refreshed, updated_at=self.clock())
            self.store.save_token_record(refreshed)
            logger.info(f"{account.kind.value} token refreshed for {account.external_account_id}")
            return refreshed
