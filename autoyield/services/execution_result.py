"""Structured outcome of one delegated execution."""

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    simulated: bool = False
    gas_used: Optional[int] = None
    bundle_id: Optional[str] = None

    @classmethod
    def failed(cls, error: str, kind: str) -> "ExecutionResult":
        return cls(success=False, error=error, error_kind=kind)

    def to_dict(self) -> dict:
        return asdict(self)
