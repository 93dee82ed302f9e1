from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Protocol, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from modules.common import guarded_call, log_event


class BalanceReader(Protocol):
    async def get_balance(self, address: str, block: str = "latest") -> int:
        ...


@dataclass(slots=True, eq=False)
class SignerAccount:
    address: str
    local_account: LocalAccount = field(repr=False)
    balance: int = 0
    bounty: set[str] = field(default_factory=set)
    busy: bool = False
    exhausted: bool = False

    @classmethod
    def from_private_key(cls, private_key: str) -> "SignerAccount":
        key = private_key.strip()
        if not key.startswith("0x"):
            key = f"0x{key}"
        local_account = Account.from_key(key)
        return cls(address=local_account.address.lower(), local_account=local_account)

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        payload = dict(tx)
        payload["to"] = to_checksum_address(payload["to"])
        signed = self.local_account.sign_transaction(payload)
        return bytes(signed.raw_transaction)

    def spend(self, amount: int) -> None:
        self.balance = max(0, self.balance - max(0, amount))

    def add_bounty(self, *tokens: str) -> None:
        self.bounty.update(token.lower() for token in tokens if token)


class SignerPool:
    """Reusable signing accounts with exclusive busy/free state.

    ``acquire`` returns the first free candidate in scan order and flips
    its ``busy`` flag with no suspension point in between. When nothing is
    free it parks on an event that ``release`` sets, instead of polling.
    """

    def __init__(self, accounts: Iterable[SignerAccount], *, logger: logging.Logger) -> None:
        self._accounts = list(accounts)
        if not self._accounts:
            raise ValueError("SignerPool requires at least one account.")
        self._logger = logger
        self._released = asyncio.Event()

    @classmethod
    def from_private_keys(cls, private_keys: Sequence[str], *, logger: logging.Logger) -> "SignerPool":
        return cls((SignerAccount.from_private_key(key) for key in private_keys), logger=logger)

    @property
    def accounts(self) -> list[SignerAccount]:
        return list(self._accounts)

    @property
    def all_exhausted(self) -> bool:
        return all(account.exhausted for account in self._accounts)

    def next_candidate(self) -> SignerAccount | None:
        for account in self._accounts:
            if not account.exhausted:
                return account
        return None

    def rotate(self, account: SignerAccount) -> None:
        if account in self._accounts:
            self._accounts.remove(account)
            self._accounts.append(account)

    def mark_exhausted(self, account: SignerAccount) -> None:
        if not account.exhausted:
            account.exhausted = True
            log_event(
                self._logger,
                level="warning",
                event="signer_exhausted",
                message="Signer has insufficient gas funds; skipping it for the rest of the round",
                signer=account.address,
                balance=account.balance,
            )

    def reset_round(self) -> None:
        for account in self._accounts:
            account.exhausted = False

    def _first_free(self, candidates: Sequence[SignerAccount]) -> SignerAccount | None:
        usable = [account for account in candidates if not account.exhausted] or list(candidates)
        for account in usable:
            if not account.busy:
                return account
        return None

    async def acquire(self, candidates: Sequence[SignerAccount] | None = None) -> SignerAccount:
        pool = list(candidates) if candidates is not None else self._accounts
        if not pool:
            raise ValueError("No signer candidates supplied.")
        while True:
            account = self._first_free(pool)
            if account is not None:
                account.busy = True
                return account
            self._released.clear()
            await self._released.wait()

    def release(self, account: SignerAccount) -> None:
        account.busy = False
        self._released.set()

    @contextlib.asynccontextmanager
    async def lease(self, candidates: Sequence[SignerAccount] | None = None) -> AsyncIterator[SignerAccount]:
        account = await self.acquire(candidates)
        try:
            yield account
        finally:
            self.release(account)

    async def refresh_balances(self, client: BalanceReader) -> None:
        for account in self._accounts:
            balance = await guarded_call(
                lambda: client.get_balance(account.address),
                logger=self._logger,
                event="signer_balance_read_failed",
                message="Failed to read signer balance; keeping local ledger",
                signer=account.address,
            )
            if balance is not None:
                account.balance = balance
