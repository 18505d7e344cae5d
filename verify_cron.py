#!/usr/bin/env python3
"""
Cron Job for Periodic Member Verification
Runs as its own service on a schedule such as "0 */6 * * *", and is also
reachable from the bot through the admin /audit command.

One run reads every stored member, checks all their codes against the
membership contract in a single query, and removes members whose code is
no longer valid. A failed chain query aborts the run before anything is
removed.
"""

import asyncio
import logging
import socket
import sys
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

from telegram import Bot

from blockchain_integrations import ChainQueryError, SecretChainClient
from config import ConfigError, load_settings
from database_adapter import DatabaseAdapter, MemberRecord, StorageError, open_store
from telegram_actions import TelegramMemberRemover
from verification import ContractRef

logger = logging.getLogger(__name__)

LEASE_NAME = "reconciliation"
LEASE_TTL_SECONDS = 30 * 60


class UnauthorizedError(Exception):
    """Reconciliation was triggered without an authorization grant."""


class ReconciliationInProgress(Exception):
    """Another reconciliation run holds the lock."""


class MemberRemover(Protocol):
    async def remove_member(self, user_id: int) -> None: ...


@dataclass
class ReconciliationReport:
    checked_count: int = 0
    revoked_user_ids: List[int] = field(default_factory=list)
    removal_failures: List[Tuple[int, str]] = field(default_factory=list)

    def summary(self) -> str:
        return (f"{self.checked_count} checked, {len(self.revoked_user_ids)} revoked, "
                f"{len(self.removal_failures)} removal failures")


def compute_revocations(records: List[MemberRecord], valid_codes) -> List[MemberRecord]:
    """Records whose code is not in the valid snapshot."""
    return [record for record in records if record.entitlement_code not in valid_codes]


class Reconciler:
    """Re-verifies every enrolled member; at most one run at a time."""

    def __init__(self, chain, store: DatabaseAdapter, remover: MemberRemover,
                 membership_contract: ContractRef, holder: Optional[str] = None):
        self.chain = chain
        self.store = store
        self.remover = remover
        self.membership_contract = membership_contract
        self.holder = holder or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._lock = asyncio.Lock()

    async def run(self, authorized: bool) -> ReconciliationReport:
        if not authorized:
            raise UnauthorizedError("reconciliation requires an authorized caller")
        if self._lock.locked():
            raise ReconciliationInProgress("a reconciliation run is already in progress")

        async with self._lock:
            acquired = await asyncio.to_thread(
                self.store.acquire_lease, LEASE_NAME, self.holder, LEASE_TTL_SECONDS
            )
            if not acquired:
                raise ReconciliationInProgress("another process is reconciling")
            try:
                return await self._run_locked()
            finally:
                await asyncio.to_thread(self.store.release_lease, LEASE_NAME, self.holder)

    async def _run_locked(self) -> ReconciliationReport:
        records = await asyncio.to_thread(self.store.list_members)
        report = ReconciliationReport(checked_count=len(records))
        logger.info(f"🔄 Starting reconciliation of {len(records)} members")

        if not records:
            logger.info("No members to verify")
            return report

        codes = {record.entitlement_code for record in records}
        # a ChainError here ends the run before any removal
        valid_codes = await self.chain.query_valid_codes(
            self.membership_contract.address, self.membership_contract.code_hash, codes
        )
        logger.info(f"📊 {len(valid_codes)} of {len(codes)} codes still valid")

        for record in compute_revocations(records, valid_codes):
            current = await asyncio.to_thread(self.store.get_member, record.user_id)
            if current is None or current.entitlement_code != record.entitlement_code:
                logger.info(f"⏭️ User {record.user_id} re-enrolled during the run, skipping")
                continue
            try:
                await self.remover.remove_member(record.user_id)
            except Exception as e:
                report.removal_failures.append((record.user_id, str(e)))
                logger.error(f"❌ Error removing user {record.user_id}: {e}")
                continue

            # only drop the row if nobody re-enrolled with a new code meanwhile
            await asyncio.to_thread(self.store.delete_member, record.user_id, record.entitlement_code)
            report.revoked_user_ids.append(record.user_id)
            logger.info(f"✅ Successfully removed user {record.user_id}")

        logger.info(f"📊 Reconciliation completed: {report.summary()}")
        return report


async def main() -> int:
    """Main function for cron job."""
    logger.info("🚀 Starting cron verification job")
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(f"ERROR: {e}")
        return 1

    try:
        store = open_store(settings)
    except StorageError as e:
        logger.error(f"❌ Could not open member store: {e}")
        return 1

    chain = SecretChainClient(settings.lcd_url, settings.chain_id, timeout=settings.chain_timeout)
    bot = Bot(token=settings.telegram_token)
    try:
        async with bot:
            reconciler = Reconciler(
                chain, store, TelegramMemberRemover(bot, settings.private_chat_id),
                ContractRef(settings.membership_contract, settings.membership_code_hash),
            )
            # the cron schedule itself is the authorization for this entry point
            report = await reconciler.run(authorized=True)
    except (ChainQueryError, ReconciliationInProgress, StorageError) as e:
        logger.error(f"❌ Cron verification job aborted: {e}")
        return 1
    finally:
        chain.close()
        store.close()

    logger.info(f"✅ Cron verification job completed: {report.summary()}")
    return 0


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
