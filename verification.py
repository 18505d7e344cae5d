#!/usr/bin/env python3
"""
Verification Module - eligibility checks and the enrollment flow
Shared by the bot handlers; contains no Telegram objects, only the
collaborators it is handed.

Enrollment outcomes:
- Granted: record stored, invite requested (delivery may still have failed)
- Denied:  missing input, bad credential, insufficient balance or invalid code; nothing stored
- Failed:  transient chain trouble; nothing stored, the user should retry
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Tuple

from blockchain_integrations import AuthError, ChainError
from database_adapter import DatabaseAdapter, MemberRecord

logger = logging.getLogger(__name__)

REASON_MISSING_INPUT = "missing input"
REASON_INSUFFICIENT_BALANCE = "insufficient balance"
REASON_INVALID_CODE = "invalid code"
REASON_BAD_CREDENTIAL = "bad credential"
REASON_TRANSIENT = "transient error, retry"


class ValidationError(Exception):
    """Missing or malformed user input; no chain call is made."""


class Eligibility(enum.Enum):
    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"
    INDETERMINATE = "indeterminate"


class Status(enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    FAILED = "failed"


@dataclass(frozen=True)
class EnrollmentOutcome:
    status: Status
    reason: Optional[str] = None
    record: Optional[MemberRecord] = None
    invite_delivered: bool = False

    @property
    def granted(self) -> bool:
        return self.status is Status.GRANTED


class InviteIssuer(Protocol):
    async def issue_invite(self, user_id: int) -> str: ...


@dataclass(frozen=True)
class ContractRef:
    address: str
    code_hash: str


# ---------------------------------------------
# Eligibility Resolver
# ---------------------------------------------
async def check_balance(chain, contract: ContractRef, address: str, viewing_key: str,
                        threshold: int) -> Tuple[Eligibility, Optional[str]]:
    """Eligibility plus the denial/failure reason to show the user."""
    try:
        balance = await chain.query_balance(contract.address, contract.code_hash, address, viewing_key)
    except AuthError as e:
        logger.info(f"❌ Credential rejected for {address}: {e}")
        return Eligibility.INELIGIBLE, REASON_BAD_CREDENTIAL
    except ChainError as e:
        logger.warning(f"⚠️ Balance query for {address} failed: {e}")
        return Eligibility.INDETERMINATE, REASON_TRANSIENT

    sufficient = balance >= threshold
    logger.info(f"📊 Balance for {address}: {balance}, required: {threshold}, sufficient: {sufficient}")
    if sufficient:
        return Eligibility.ELIGIBLE, None
    return Eligibility.INELIGIBLE, REASON_INSUFFICIENT_BALANCE


async def resolve_by_balance(chain, contract: ContractRef, address: str, viewing_key: str,
                             threshold: int) -> Eligibility:
    """Eligible iff balance >= threshold; chain trouble is never a denial."""
    eligibility, _ = await check_balance(chain, contract, address, viewing_key, threshold)
    return eligibility


def resolve_by_code(code: str, valid_codes: Iterable[str]) -> Eligibility:
    """Judge a code against an already fetched valid-code snapshot."""
    return Eligibility.ELIGIBLE if code in valid_codes else Eligibility.INELIGIBLE


def _require(*values: Optional[str]) -> None:
    if any(value is None or not value.strip() for value in values):
        raise ValidationError(REASON_MISSING_INPUT)


# ---------------------------------------------
# Enrollment Workflow
# ---------------------------------------------
class EnrollmentService:
    """Validate -> resolve -> persist -> invite.

    A record is kept even when invite delivery fails; the user can ask
    again and the next successful request sends a fresh invite.
    """

    def __init__(self, chain, store: DatabaseAdapter, invites: InviteIssuer,
                 balance_contract: ContractRef, membership_contract: ContractRef,
                 min_balance: int):
        self.chain = chain
        self.store = store
        self.invites = invites
        self.balance_contract = balance_contract
        self.membership_contract = membership_contract
        self.min_balance = min_balance

    async def enroll_by_balance(self, user_id: int, display_name: Optional[str],
                                address: Optional[str], viewing_key: Optional[str]) -> EnrollmentOutcome:
        try:
            _require(address, viewing_key)
        except ValidationError as e:
            return EnrollmentOutcome(Status.DENIED, str(e))
        address, viewing_key = address.strip(), viewing_key.strip()

        eligibility, reason = await check_balance(
            self.chain, self.balance_contract, address, viewing_key, self.min_balance
        )
        if eligibility is Eligibility.INDETERMINATE:
            return EnrollmentOutcome(Status.FAILED, reason)
        if eligibility is Eligibility.INELIGIBLE:
            return EnrollmentOutcome(Status.DENIED, reason)

        # the stored code is what reconciliation judges later
        try:
            code = await self.chain.query_member_code(
                self.balance_contract.address, self.balance_contract.code_hash, address, viewing_key
            )
        except AuthError:
            return EnrollmentOutcome(Status.DENIED, REASON_BAD_CREDENTIAL)
        except ChainError as e:
            logger.warning(f"⚠️ Member code query for {address} failed: {e}")
            return EnrollmentOutcome(Status.FAILED, REASON_TRANSIENT)
        if not code:
            return EnrollmentOutcome(Status.DENIED, REASON_INSUFFICIENT_BALANCE)

        return await self._grant(user_id, display_name, code)

    async def enroll_by_code(self, user_id: int, display_name: Optional[str],
                             code: Optional[str]) -> EnrollmentOutcome:
        try:
            _require(code)
        except ValidationError as e:
            return EnrollmentOutcome(Status.DENIED, str(e))
        code = code.strip()

        try:
            valid = await self.chain.query_valid_codes(
                self.membership_contract.address, self.membership_contract.code_hash, {code}
            )
        except ChainError as e:
            logger.warning(f"⚠️ Code validation for user {user_id} failed: {e}")
            return EnrollmentOutcome(Status.FAILED, REASON_TRANSIENT)
        except AuthError:
            return EnrollmentOutcome(Status.DENIED, REASON_INVALID_CODE)

        if resolve_by_code(code, valid) is Eligibility.INELIGIBLE:
            return EnrollmentOutcome(Status.DENIED, REASON_INVALID_CODE)
        return await self._grant(user_id, display_name, code)

    async def _grant(self, user_id: int, display_name: Optional[str], code: str) -> EnrollmentOutcome:
        # StorageError propagates: the caller reports it, nothing was granted
        record = await asyncio.to_thread(self.store.upsert_member, user_id, display_name, code)
        logger.info(f"✅ Enrolled user {user_id}")

        try:
            await self.invites.issue_invite(user_id)
        except Exception as e:
            logger.error(f"❌ Invite delivery to {user_id} failed: {e}")
            return EnrollmentOutcome(Status.GRANTED, record=record, invite_delivered=False)
        return EnrollmentOutcome(Status.GRANTED, record=record, invite_delivered=True)


def is_owner(user_id, admin_user_ids) -> bool:
    """Check if user is one of the bot owners."""
    try:
        return int(user_id) in admin_user_ids
    except (TypeError, ValueError):
        return False
