#!/usr/bin/env python3
"""
Chat commands as plain async functions: (CommandRequest, Deps) -> CommandResult.
main.py turns Telegram updates into CommandRequests and sends the replies;
nothing in here touches the Telegram API directly.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from blockchain_integrations import ChainQueryError, AuthError, to_whole_tokens
from config import Settings
from database_adapter import DatabaseAdapter, StorageError
from price_cache import PriceCache, PriceFetchError
from verification import (
    EnrollmentOutcome, EnrollmentService, Status, is_owner,
    REASON_BAD_CREDENTIAL, REASON_INSUFFICIENT_BALANCE, REASON_INVALID_CODE,
    REASON_MISSING_INPUT,
)
from verify_cron import Reconciler, ReconciliationInProgress

logger = logging.getLogger(__name__)

FACTS = [
    'Amber is a gem - but not a gemstone. OK technically it is an "organic gemstone".',
    "The largest amber deposits in the world are in the Baltic region.",
    "Amber was once part of a tree's immune system",
    "Amber requires millions of years and proper burial conditions to form.",
    "The word electricity derives from the greek word for amber.",
    "Multiple extinct species have been identified thanks to amber.",
    "Amber has healing powers and the power to ward off witches.",
    "Humans have used amber in jewelry since at least 11,000 BCE.",
    "The oldest amber is 320 million years old.",
    "Amber has been found in more than 300 colors.",
    "It's easy to be fooled by fake amber.",
]

JOIN_USAGE = "Please provide an address and viewing key. Usage: `/join <address> <viewing_key>`"
CODE_USAGE = "Please provide an address and viewing key. Usage: `/code <address> <viewing_key>`"
REDEEM_USAGE = "Please provide your membership code. Usage: `/redeem <code>`"
DM_ONLY = "DM me"
RETRY_LATER = "⚠️ I couldn't reach the chain right now. Please try again in a few minutes."
STORAGE_FAILURE = "⚠️ Something went wrong on my side. Please try again later."
BAD_CREDENTIAL = "I couldn't check your balance 😢. Check your address and viewing key, and try again."
NOT_ENOUGH = "Not enough AMBER..."
OWNER_ONLY = "❌ This command is for bot owner only."

HELP_TEXT = (
    "📋 *Commands*\n\n"
    "/join <address> <viewing_key> - Request an invitation\n"
    "/redeem <code> - Join with a membership code\n"
    "/code <address> <viewing_key> - Get your membership code\n"
    "/stake - SCRT staked to AmberDAO\n"
    "/delegators - Number of delegators to AmberDAO\n"
    "/top5whale - Top 5 largest delegations\n"
    "/validator - AmberDAO validator summary\n"
    "/ratio - SHD/SCRT price ratio\n"
    "/price <name> - Token price\n"
    "/fact - A random fact about amber"
)


@dataclass(frozen=True)
class CommandRequest:
    user_id: int
    chat_id: int
    is_private: bool
    display_name: Optional[str] = None
    args: Sequence[str] = ()

    def arg(self, index: int) -> Optional[str]:
        return self.args[index] if len(self.args) > index else None


@dataclass(frozen=True)
class CommandResult:
    text: str
    markdown: bool = False


@dataclass
class Deps:
    settings: Settings
    chain: object
    store: DatabaseAdapter
    enrollment: EnrollmentService
    reconciler: Reconciler
    prices: PriceCache
    choose: Callable[[List[str]], str] = field(default=random.choice)


def describe_outcome(outcome: EnrollmentOutcome, usage: str) -> CommandResult:
    if outcome.status is Status.FAILED:
        return CommandResult(RETRY_LATER)
    if outcome.status is Status.DENIED:
        messages = {
            REASON_MISSING_INPUT: CommandResult(usage, markdown=True),
            REASON_BAD_CREDENTIAL: CommandResult(BAD_CREDENTIAL),
            REASON_INSUFFICIENT_BALANCE: CommandResult(NOT_ENOUGH),
            REASON_INVALID_CODE: CommandResult("❌ That membership code is not valid."),
        }
        return messages.get(outcome.reason, CommandResult(f"❌ Request denied: {outcome.reason}"))
    if outcome.invite_delivered:
        return CommandResult("✅ Your request has been approved. I've sent you an invite link.")
    return CommandResult(
        "✅ You're verified, but I couldn't deliver the invite link. "
        "Send the same command again in a minute, or ask an admin."
    )


async def start_command(request: CommandRequest, deps: Deps) -> CommandResult:
    return CommandResult(
        "Enter your SCRT address and AMBER viewing key to generate an invite link to OAC.\n\n"
        "Example:\n`/join secret1hctvs6s48yu7pr2n3ujn3wn74fr5d798daqwwg amber_rocks`",
        markdown=True,
    )


async def help_command(request: CommandRequest, deps: Deps) -> CommandResult:
    text = HELP_TEXT
    if is_owner(request.user_id, deps.settings.admin_user_ids):
        text += "\n\n👑 *Admin*\n/users - List enrolled members\n/audit - Re-verify all members now"
    return CommandResult(text, markdown=True)


async def join_command(request: CommandRequest, deps: Deps) -> CommandResult:
    if not request.is_private:
        return CommandResult(DM_ONLY)
    try:
        outcome = await deps.enrollment.enroll_by_balance(
            request.user_id, request.display_name, request.arg(0), request.arg(1)
        )
    except StorageError as e:
        logger.error(f"❌ Storage failure enrolling {request.user_id}: {e}")
        return CommandResult(STORAGE_FAILURE)
    return describe_outcome(outcome, JOIN_USAGE)


async def redeem_command(request: CommandRequest, deps: Deps) -> CommandResult:
    if not request.is_private:
        return CommandResult(DM_ONLY)
    try:
        outcome = await deps.enrollment.enroll_by_code(
            request.user_id, request.display_name, request.arg(0)
        )
    except StorageError as e:
        logger.error(f"❌ Storage failure enrolling {request.user_id}: {e}")
        return CommandResult(STORAGE_FAILURE)
    return describe_outcome(outcome, REDEEM_USAGE)


async def code_command(request: CommandRequest, deps: Deps) -> CommandResult:
    if not request.is_private:
        return CommandResult(DM_ONLY)
    address, viewing_key = request.arg(0), request.arg(1)
    if not address or not viewing_key:
        return CommandResult(CODE_USAGE, markdown=True)

    contract = deps.enrollment.balance_contract
    try:
        code = await deps.chain.query_member_code(contract.address, contract.code_hash,
                                                  address, viewing_key)
    except AuthError:
        return CommandResult(BAD_CREDENTIAL)
    except ChainQueryError as e:
        logger.warning(f"⚠️ Member code lookup failed: {e}")
        return CommandResult(RETRY_LATER)

    if not code:
        return CommandResult(NOT_ENOUGH)
    return CommandResult(f"Your OAC membership code is: `{code}`", markdown=True)


async def stake_command(request: CommandRequest, deps: Deps) -> CommandResult:
    validator = deps.settings.validator_address
    if not validator:
        return CommandResult("Staking stats are not configured.")
    try:
        tokens = await deps.chain.query_validator_tokens(validator)
    except ChainQueryError as e:
        logger.warning(f"⚠️ Validator query failed: {e}")
        return CommandResult(RETRY_LATER)
    return CommandResult(f"AmberDAO has {to_whole_tokens(tokens):,} SCRT staked.")


async def delegators_command(request: CommandRequest, deps: Deps) -> CommandResult:
    validator = deps.settings.validator_address
    if not validator:
        return CommandResult("Staking stats are not configured.")
    try:
        total = await deps.chain.query_delegation_count(validator)
    except ChainQueryError as e:
        logger.warning(f"⚠️ Delegation count query failed: {e}")
        return CommandResult(RETRY_LATER)
    return CommandResult(f"AmberDAO has {total:,} delegations.")


async def top5whale_command(request: CommandRequest, deps: Deps) -> CommandResult:
    validator = deps.settings.validator_address
    if not validator:
        return CommandResult("Staking stats are not configured.")
    try:
        amounts = await deps.chain.query_delegation_amounts(validator)
    except ChainQueryError as e:
        logger.warning(f"⚠️ Delegation query failed: {e}")
        return CommandResult(RETRY_LATER)
    top_five = [f"{to_whole_tokens(amount):,} SCRT" for amount in amounts[:5]]
    return CommandResult("The top 5 largest delegations to AmberDAO are:\n" + " \n".join(top_five))


async def validator_command(request: CommandRequest, deps: Deps) -> CommandResult:
    validator = deps.settings.validator_address
    if not validator:
        return CommandResult("Staking stats are not configured.")
    try:
        info = await deps.chain.query_validator_info(validator)
    except ChainQueryError as e:
        logger.warning(f"⚠️ Validator info query failed: {e}")
        return CommandResult(RETRY_LATER)
    text = (f"AmberDAO has {to_whole_tokens(info['tokens']):,} SCRT staked "
            f"from {info['delegators']:,} delegators.")
    if info["top_delegations"]:
        text += f"\nLargest delegation: {to_whole_tokens(info['top_delegations'][0]):,} SCRT"
    return CommandResult(text)


async def ratio_command(request: CommandRequest, deps: Deps) -> CommandResult:
    try:
        shd_scrt, shd_stkd_scrt = await deps.prices.ratios()
    except PriceFetchError as e:
        logger.warning(f"⚠️ Price lookup failed: {e}")
        return CommandResult("⚠️ Prices are unavailable right now.")
    return CommandResult(f"1 SHD = {shd_scrt:.2f} SCRT\n1 SHD = {shd_stkd_scrt:.2f} stkd-SCRT")


async def price_command(request: CommandRequest, deps: Deps) -> CommandResult:
    query = " ".join(request.args).strip()
    if not query:
        return CommandResult("Usage: `/price <token name>`", markdown=True)
    try:
        matches = await deps.prices.search(query)
    except PriceFetchError as e:
        logger.warning(f"⚠️ Price lookup failed: {e}")
        return CommandResult("⚠️ Prices are unavailable right now.")
    if not matches:
        return CommandResult(f"{query} not found")
    return CommandResult("\n".join(f"{t.name} = {t.price:.3f} USD" for t in matches[:10]))


async def fact_command(request: CommandRequest, deps: Deps) -> CommandResult:
    return CommandResult(deps.choose(FACTS))


async def users_command(request: CommandRequest, deps: Deps) -> CommandResult:
    if not is_owner(request.user_id, deps.settings.admin_user_ids):
        return CommandResult(OWNER_ONLY)
    try:
        members = await asyncio.to_thread(deps.store.list_members)
    except StorageError as e:
        logger.error(f"❌ Could not list members: {e}")
        return CommandResult(STORAGE_FAILURE)
    if not members:
        return CommandResult("No members enrolled yet.")
    lines = [
        f"• {m.display_name or 'unknown'} ({m.user_id}) since {m.enrolled_at_dt:%Y-%m-%d %H:%M} UTC"
        for m in members
    ]
    return CommandResult(f"👥 {len(members)} members:\n" + "\n".join(lines))


async def audit_command(request: CommandRequest, deps: Deps) -> CommandResult:
    authorized = is_owner(request.user_id, deps.settings.admin_user_ids)
    if not authorized:
        return CommandResult(OWNER_ONLY)
    try:
        report = await deps.reconciler.run(authorized=authorized)
    except ReconciliationInProgress:
        return CommandResult("⏳ A verification run is already in progress.")
    except ChainQueryError as e:
        logger.error(f"❌ Audit aborted: {e}")
        return CommandResult("⚠️ Chain query failed - audit aborted, nobody was removed.")
    except StorageError as e:
        logger.error(f"❌ Audit storage failure: {e}")
        return CommandResult(STORAGE_FAILURE)

    text = f"📊 Verification completed: {report.summary()}"
    if report.revoked_user_ids:
        text += "\nRemoved: " + ", ".join(str(uid) for uid in report.revoked_user_ids)
    if report.removal_failures:
        text += "\nFailed: " + ", ".join(f"{uid} ({err})" for uid, err in report.removal_failures)
    return CommandResult(text)


COMMANDS = {
    "start": (start_command, "Be greeted by the bot"),
    "help": (help_command, "Get a list of commands"),
    "join": (join_command, "Request an invitation"),
    "redeem": (redeem_command, "Join with a membership code"),
    "code": (code_command, "Get your OAC code"),
    "stake": (stake_command, "Get SCRT staked to AmberDAO"),
    "delegators": (delegators_command, "Get number of delegators to AmberDAO"),
    "top5whale": (top5whale_command, "Get top 5 largest delegations to AmberDAO"),
    "validator": (validator_command, "Get a summary of the AmberDAO validator"),
    "ratio": (ratio_command, "Get ratio of SHD/SCRT"),
    "price": (price_command, "Get the price of a token"),
    "fact": (fact_command, "Get a random fact about amber"),
    "users": (users_command, "List enrolled members (admin)"),
    "audit": (audit_command, "Re-verify all members (admin)"),
}
