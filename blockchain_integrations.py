#!/usr/bin/env python3
"""
Blockchain Integration Module for the Amber gate bot (Secret Network)
Read-only queries against the ledger's LCD endpoint:
- SNIP-20 balance and member-code queries (address + viewing key)
- Batched valid-code query against the membership contract
- Validator / delegation statistics

Failures are split in two:
- AuthError: the ledger rejected the credential (wrong address/key pairing)
- ChainError: network, timeout or protocol trouble; says nothing about eligibility
"""

import asyncio
import base64
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

import requests

logger = logging.getLogger(__name__)

UNITS_PER_TOKEN = 1_000_000

# statuses the LCD uses when it refuses a query (bad address, wrong viewing key)
AUTH_REJECT_STATUSES = frozenset({400, 401, 403})


class ChainQueryError(Exception):
    """Base class for chain adapter failures."""


class AuthError(ChainQueryError):
    """The ledger refused the address/viewing-key pairing."""


class ChainError(ChainQueryError):
    """Transient failure talking to the ledger."""


class SecretChainClient:
    """Stateless pass-through to a Secret Network LCD endpoint."""

    def __init__(self, lcd_url: str, chain_id: str, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.lcd_url = lcd_url.rstrip("/")
        self.chain_id = chain_id
        self.timeout = timeout
        self.session = session or requests.Session()

    # ---------------------------------------------
    # HTTP plumbing
    # ---------------------------------------------
    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.lcd_url}{path}"
        # requests puts the full URL in its messages, and the query string carries viewing keys
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise ChainError(f"Timeout querying {path}") from e
        except requests.RequestException as e:
            raise ChainError(f"Request to {path} failed: {type(e).__name__}") from e

        status = response.status_code
        if status >= 400 and status not in AUTH_REJECT_STATUSES:
            # rate limits, timeouts and wrong paths say nothing about the credential
            raise ChainError(f"LCD returned {status} for {path}")

        try:
            body = response.json()
        except ValueError as e:
            raise ChainError(f"Undecodable response from {path}") from e

        if status in AUTH_REJECT_STATUSES:
            message = body.get("message") if isinstance(body, dict) else None
            raise AuthError(message or f"LCD rejected query ({status})")

        if not isinstance(body, dict):
            raise ChainError(f"Unexpected response shape from {path}")
        return body

    def _query_contract_sync(self, contract_addr: str, code_hash: str,
                             query: Dict[str, Any]) -> Dict[str, Any]:
        encoded = base64.b64encode(json.dumps(query).encode()).decode()
        body = self._get_json(
            f"/compute/v1beta1/query/{contract_addr}",
            params={"query": encoded, "code_hash": code_hash},
        )
        data = body.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(base64.b64decode(data))
            except ValueError as e:
                raise ChainError("Contract returned undecodable data") from e
        if not isinstance(data, dict):
            raise ChainError("Contract response carried no data")
        return data

    async def query_contract(self, contract_addr: str, code_hash: str,
                             query: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._query_contract_sync, contract_addr, code_hash, query)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get_json, path, params)

    # ---------------------------------------------
    # Balance / membership queries
    # ---------------------------------------------
    async def query_balance(self, contract_addr: str, code_hash: str,
                            address: str, viewing_key: str) -> int:
        """Return the SNIP-20 balance in base units."""
        data = await self.query_contract(
            contract_addr, code_hash,
            {"balance": {"address": address, "key": viewing_key}},
        )
        if "viewing_key_error" in data:
            raise AuthError(data["viewing_key_error"].get("msg", "Wrong viewing key"))
        try:
            return int(data["balance"]["amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainError(f"Malformed balance response: {data}") from e

    async def query_member_code(self, contract_addr: str, code_hash: str,
                                address: str, viewing_key: str) -> str:
        """Return the caller's membership code, empty when the balance does not qualify."""
        data = await self.query_contract(
            contract_addr, code_hash,
            {"member_code": {"address": address, "key": viewing_key}},
        )
        if "viewing_key_error" in data:
            raise AuthError(data["viewing_key_error"].get("msg", "Wrong viewing key"))
        try:
            code = data["member_code"]["code"]
        except (KeyError, TypeError) as e:
            raise ChainError(f"Malformed member_code response: {data}") from e
        return code or ""

    async def query_valid_codes(self, contract_addr: str, code_hash: str,
                                codes: Iterable[str]) -> Set[str]:
        """One batched query; returns the subset of codes the contract accepts."""
        requested = sorted(set(codes))
        data = await self.query_contract(
            contract_addr, code_hash,
            {"valid_codes": {"codes": requested}},
        )
        try:
            valid = data["valid_codes"]["codes"]
        except (KeyError, TypeError) as e:
            raise ChainError(f"Malformed valid_codes response: {data}") from e
        if not isinstance(valid, list) or not all(isinstance(code, str) for code in valid):
            raise ChainError(f"Malformed valid_codes response: {data}")
        # the contract only ever echoes codes it was asked about
        return set(valid) & set(requested)

    # ---------------------------------------------
    # Staking statistics
    # ---------------------------------------------
    async def query_validator_tokens(self, validator_addr: str) -> int:
        body = await self._get(f"/cosmos/staking/v1beta1/validators/{validator_addr}")
        try:
            return int(body["validator"]["tokens"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainError("Malformed validator response") from e

    async def query_delegation_count(self, validator_addr: str) -> int:
        body = await self._get(
            f"/cosmos/staking/v1beta1/validators/{validator_addr}/delegations",
            params={"pagination.count_total": "true", "pagination.limit": "1"},
        )
        try:
            return int(body["pagination"]["total"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainError("Malformed delegations response") from e

    async def query_delegation_amounts(self, validator_addr: str) -> List[int]:
        """All delegation amounts to the validator in base units, largest first."""
        body = await self._get(
            f"/cosmos/staking/v1beta1/validators/{validator_addr}/delegations",
            params={"pagination.limit": "1000000"},
        )
        try:
            amounts = [int(d["balance"]["amount"]) for d in body["delegation_responses"]]
        except (KeyError, TypeError, ValueError) as e:
            raise ChainError("Malformed delegations response") from e
        return sorted(amounts, reverse=True)

    async def query_validator_info(self, validator_addr: str) -> Dict[str, Any]:
        """Staking stats for the validator: bonded tokens, delegators, top delegations."""
        tokens = await self.query_validator_tokens(validator_addr)
        amounts = await self.query_delegation_amounts(validator_addr)
        return {
            "tokens": tokens,
            "delegators": len(amounts),
            "top_delegations": amounts[:5],
        }

    async def check_chain_id(self) -> bool:
        """Compare the node's network id with the configured chain id."""
        body = await self._get("/cosmos/base/tendermint/v1beta1/node_info")
        network = (body.get("default_node_info") or {}).get("network")
        if network != self.chain_id:
            logger.warning(f"⚠️ LCD reports chain {network!r}, expected {self.chain_id!r}")
            return False
        logger.info(f"✅ Connected to {network} via {self.lcd_url}")
        return True

    def close(self):
        self.session.close()


def to_whole_tokens(amount: int) -> int:
    """Base units to whole tokens, rounded to the nearest unit."""
    return (amount + UNITS_PER_TOKEN // 2) // UNITS_PER_TOKEN
