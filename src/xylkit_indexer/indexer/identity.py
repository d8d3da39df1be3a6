"""Account identity resolution.

Protocol account ids are 256-bit integers whose layout depends on the
driver that created them:

- Address driver: the id is the controlling wallet address read as an
  integer, so the wallet is recovered by re-hexing the id.
- NFT driver: the id packs a 160-bit minter prefix with a 64-bit salt,
  ``(minter & (2**160 - 1)) << 64 | salt``. The current owner can only be
  obtained from the chain (``nft_driver::owner_of``).

Ids below ``2**224`` fit both layouts, so they are classified only with
outside evidence (a matching transaction sender or the entry function's
module). Without it they resolve to an unknown driver instead of a guess.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

from xylkit_indexer.chain.client import ChainClientError
from xylkit_indexer.chain.models import is_address, normalize_address

if TYPE_CHECKING:
    from xylkit_indexer.chain.client import MovementClient

logger = logging.getLogger(__name__)

MAX_ACCOUNT_ID = (1 << 256) - 1
# NFT-driver ids are (minter & (2**160 - 1)) << 64 | salt, so ids at or
# above this value cannot come from the NFT driver.
NFT_ID_LIMIT = 1 << (160 + 64)


class DriverType(int, Enum):
    """Driver tags stored on account rows."""

    UNKNOWN = 0
    ADDRESS = 1
    NFT = 2


DRIVER_MODULES = {
    "address_driver": DriverType.ADDRESS,
    "nft_driver": DriverType.NFT,
}
DRIVER_NAMES = {driver: name for name, driver in DRIVER_MODULES.items()}


def parse_account_id(value: object) -> int | None:
    """Parse an account id from an event field; None if it is not a valid u256."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        return None
    if parsed < 0 or parsed > MAX_ACCOUNT_ID:
        return None
    return parsed


def calc_account_id(address: str) -> int:
    """Address-driver account id of ``address``."""
    return int(normalize_address(address), 16)


def driver_from_entry_function(entry_function: str | None) -> DriverType | None:
    """Driver implied by the module of ``<addr>::<module>::<function>``."""
    if not entry_function:
        return None
    parts = entry_function.split("::")
    if len(parts) < 3:
        return None
    return DRIVER_MODULES.get(parts[1])


@dataclass(frozen=True)
class AddressDriverAccount:
    account_id: int

    @property
    def wallet_address(self) -> str:
        return "0x" + format(self.account_id, "064x")


@dataclass(frozen=True)
class NftDriverAccount:
    account_id: int


@dataclass(frozen=True)
class UnknownAccount:
    account_id: int


AccountRef = Union[AddressDriverAccount, NftDriverAccount, UnknownAccount]


def classify_account(
    account_id: int,
    *,
    sender_hint: str | None = None,
    entry_function_hint: str | None = None,
) -> AccountRef:
    """Classify an id into exactly one driver variant.

    Evidence is applied in order: a sender whose own address-driver id
    equals ``account_id``, the entry function's driver module, then the
    bit layout. Only ids that the NFT layout cannot produce are classified
    by layout alone.
    """
    if sender_hint and is_address(sender_hint) and calc_account_id(sender_hint) == account_id:
        return AddressDriverAccount(account_id)

    driver = driver_from_entry_function(entry_function_hint)
    if driver is DriverType.ADDRESS:
        return AddressDriverAccount(account_id)
    if driver is DriverType.NFT:
        return NftDriverAccount(account_id)

    if account_id >= NFT_ID_LIMIT:
        return AddressDriverAccount(account_id)
    return UnknownAccount(account_id)


@dataclass(frozen=True)
class AccountIdentity:
    """Resolved identity of an account id."""

    wallet_address: str | None
    driver_type: DriverType
    driver_name: str | None


class AccountIdentityResolver:
    """Derives wallet addresses and driver tags for account ids.

    Owner lookups for NFT-driver accounts go to the chain and are
    best-effort: a failed lookup leaves the wallet unresolved so it can be
    retried later.
    """

    def __init__(self, client: MovementClient) -> None:
        self._client = client

    async def resolve(
        self,
        account_id: int,
        deployment_address: str,
        *,
        sender_hint: str | None = None,
        entry_function_hint: str | None = None,
    ) -> AccountIdentity:
        ref = classify_account(
            account_id,
            sender_hint=sender_hint,
            entry_function_hint=entry_function_hint,
        )

        if isinstance(ref, AddressDriverAccount):
            return AccountIdentity(
                wallet_address=ref.wallet_address,
                driver_type=DriverType.ADDRESS,
                driver_name=DRIVER_NAMES[DriverType.ADDRESS],
            )
        if isinstance(ref, NftDriverAccount):
            owner = await self.lookup_nft_owner(deployment_address, ref.account_id)
            return AccountIdentity(
                wallet_address=owner,
                driver_type=DriverType.NFT,
                driver_name=DRIVER_NAMES[DriverType.NFT],
            )
        return AccountIdentity(wallet_address=None, driver_type=DriverType.UNKNOWN, driver_name=None)

    async def lookup_nft_owner(self, deployment_address: str, account_id: int) -> str | None:
        """Current owner of an NFT-driver account, or None if the lookup fails."""
        function = f"{deployment_address}::nft_driver::owner_of"
        try:
            result = await self._client.view(function, [str(account_id)])
        except ChainClientError as e:
            logger.warning("Owner lookup failed for account %s: %s", account_id, e)
            return None

        owner = result[0] if result else None
        if not isinstance(owner, str):
            return None
        try:
            return normalize_address(owner)
        except ValueError:
            logger.warning("Owner lookup for account %s returned %r", account_id, owner)
            return None
