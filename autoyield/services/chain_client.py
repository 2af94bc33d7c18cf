"""
Async Web3 client factory and the minimal contract ABIs the agent reads.

Only read calls live here; writes go through the sponsored relay.
"""

import logging
from typing import Optional

from web3 import AsyncHTTPProvider, AsyncWeb3

from ..core.config import get_settings

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

ERC4626_ABI = ERC20_ABI + [
    {
        "name": "convertToAssets",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "shares", "type": "uint256"}],
        "outputs": [{"name": "assets", "type": "uint256"}],
    },
    {
        "name": "asset",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

AGGREGATOR_V3_ABI = [
    {
        "name": "latestRoundData",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]

_web3: Optional[AsyncWeb3] = None


def get_web3() -> AsyncWeb3:
    """Get or create the cached AsyncWeb3 client for the configured RPC"""
    global _web3
    if _web3 is None:
        settings = get_settings()
        _web3 = AsyncWeb3(
            AsyncHTTPProvider(
                settings.rpc_url,
                request_kwargs={"timeout": settings.rpc_timeout_seconds},
            )
        )
    return _web3


def checksum(address: str) -> str:
    return AsyncWeb3.to_checksum_address(address)


async def get_code(address: str, w3: Optional[AsyncWeb3] = None) -> str:
    """Deployed code at an address as 0x-prefixed hex ("0x" when empty)"""
    w3 = w3 or get_web3()
    code = await w3.eth.get_code(checksum(address))
    return "0x" + bytes(code).hex()


async def erc20_balance(token: str, owner: str, w3: Optional[AsyncWeb3] = None) -> int:
    w3 = w3 or get_web3()
    contract = w3.eth.contract(address=checksum(token), abi=ERC20_ABI)
    return await contract.functions.balanceOf(checksum(owner)).call()


async def ping() -> bool:
    """Quick connectivity check: can we fetch the latest block number?"""
    try:
        await get_web3().eth.block_number
        return True
    except Exception as e:
        logger.warning(f"RPC ping failed: {e}")
        return False
