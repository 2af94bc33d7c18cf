"""
Execution builder: decisions to ordered on-chain calls.

Pure: no I/O, no signing. Every call carries value 0.

Step ordering is part of the contract. Later calls read state written by
earlier ones (allowance, redeemed balance), so the lists returned here
must be submitted as one batch in exactly this order.
"""

from dataclasses import dataclass
from typing import Optional

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

MAX_UINT256 = 2**256 - 1


def _selector(signature: str) -> str:
    return "0x" + function_signature_to_4byte_selector(signature).hex()


APPROVE_SELECTOR = _selector("approve(address,uint256)")  # 0x095ea7b3
TRANSFER_SELECTOR = _selector("transfer(address,uint256)")  # 0xa9059cbb
DEPOSIT_SELECTOR = _selector("deposit(uint256,address)")  # 0x6e553f65
REDEEM_SELECTOR = _selector("redeem(uint256,address,address)")  # 0xba087652
WITHDRAW_SELECTOR = _selector("withdraw(uint256,address,address)")  # 0xb460af94


@dataclass(frozen=True)
class Call:
    """A single call inside a batched operation"""
    target: str
    data: str
    value: int = 0

    @property
    def selector(self) -> str:
        return self.data[:10]

    def to_dict(self) -> dict:
        return {"to": self.target, "value": hex(self.value), "data": self.data}


def encode_call(signature: str, arg_types: list[str], args: list) -> str:
    """ABI-encode a function call as 0x-prefixed hex"""
    normalized = [
        to_checksum_address(a) if t == "address" else a
        for t, a in zip(arg_types, args)
    ]
    return _selector(signature) + encode(arg_types, normalized).hex()


def _check_amount(amount: int) -> None:
    if amount < 0 or amount > MAX_UINT256:
        raise ValueError(f"Amount out of uint256 range: {amount}")


# ==================== Primitive calls ====================


def approve_call(token: str, spender: str, amount: int) -> Call:
    _check_amount(amount)
    return Call(
        target=to_checksum_address(token),
        data=encode_call("approve(address,uint256)", ["address", "uint256"], [spender, amount]),
    )


def transfer_call(token: str, recipient: str, amount: int) -> Call:
    _check_amount(amount)
    return Call(
        target=to_checksum_address(token),
        data=encode_call("transfer(address,uint256)", ["address", "uint256"], [recipient, amount]),
    )


def vault_deposit_call(vault: str, assets: int, receiver: str) -> Call:
    _check_amount(assets)
    return Call(
        target=to_checksum_address(vault),
        data=encode_call("deposit(uint256,address)", ["uint256", "address"], [assets, receiver]),
    )


def vault_redeem_call(vault: str, shares: int, receiver: str, owner: str) -> Call:
    _check_amount(shares)
    return Call(
        target=to_checksum_address(vault),
        data=encode_call(
            "redeem(uint256,address,address)",
            ["uint256", "address", "address"],
            [shares, receiver, owner],
        ),
    )


def vault_withdraw_call(vault: str, assets: int, receiver: str, owner: str) -> Call:
    _check_amount(assets)
    return Call(
        target=to_checksum_address(vault),
        data=encode_call(
            "withdraw(uint256,address,address)",
            ["uint256", "address", "address"],
            [assets, receiver, owner],
        ),
    )


# ==================== Flows ====================


def build_deposit_calls(vault: str, asset: str, amount: int, receiver: str) -> list[Call]:
    """[approve(vault, amount), deposit(amount, receiver)]"""
    if amount <= 0:
        raise ValueError("Deposit amount must be positive")
    return [
        approve_call(asset, vault, amount),
        vault_deposit_call(vault, amount, receiver),
    ]


def build_withdraw_calls(vault: str, shares: int, receiver: str, owner: str) -> list[Call]:
    """[redeem(shares, receiver, owner)]; exiting needs no approval."""
    if shares <= 0:
        raise ValueError("Shares to redeem must be positive")
    return [vault_redeem_call(vault, shares, receiver, owner)]


def build_rebalance_calls(
    source_vault: str,
    dest_vault: str,
    asset: str,
    shares: int,
    owner: str,
    deposit_amount: Optional[int] = None,
) -> list[Call]:
    """
    Full move between two ERC-4626 vaults in exactly three steps:

        [redeem(source, shares, owner, owner),
         approve(asset -> dest, MAX),
         deposit(dest, MAX or exact, owner)]

    Simplification: without ``deposit_amount`` the approval and deposit
    use MAX_UINT256 so the redeemed amount never has to be queried
    between steps. This relies on the destination vault treating the
    sentinel as "everything the owner holds"; pass the exact amount for
    vaults that do not.
    """
    if shares <= 0:
        raise ValueError("Shares to redeem must be positive")
    if source_vault.lower() == dest_vault.lower():
        raise ValueError("Source and destination vault are the same")

    amount = MAX_UINT256 if deposit_amount is None else deposit_amount
    return [
        vault_redeem_call(source_vault, shares, owner, owner),
        approve_call(asset, dest_vault, MAX_UINT256),
        vault_deposit_call(dest_vault, amount, owner),
    ]


def build_transfer_calls(asset: str, recipient: str, amount: int) -> list[Call]:
    """[transfer(recipient, amount)] on the stable asset"""
    if amount <= 0:
        raise ValueError("Transfer amount must be positive")
    return [transfer_call(asset, recipient, amount)]
