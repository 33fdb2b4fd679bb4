"""
Tezos Delegation Indexer - Data Models

DelegationRecord is the durable unit of state: one row per delegation event,
identified by (timestamp, delegator). TzktDelegation mirrors the subset of the
upstream TzKT payload the indexer reads.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class DelegationRecord(BaseModel):
    """A stored delegation event."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(..., description="Source-reported ISO-8601 event time")
    amount: int = Field(..., ge=INT64_MIN, le=INT64_MAX, description="Amount in mutez")
    delegator: str = Field(..., min_length=1, description="Sender account address")
    level: int = Field(..., description="Block height at event time")

    @field_validator("timestamp")
    @classmethod
    def _validate_timestamp(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError(f"timestamp {value!r} is not ISO-8601") from exc
        return value

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the event in the checkpoint store."""
        return (self.timestamp, self.delegator)


class TzktSender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str


class TzktDelegation(BaseModel):
    """One item of ``GET /v1/operations/delegations``."""

    model_config = ConfigDict(extra="ignore")

    timestamp: str
    amount: int
    sender: TzktSender
    level: int

    def to_record(self) -> DelegationRecord:
        return DelegationRecord(
            timestamp=self.timestamp,
            amount=self.amount,
            delegator=self.sender.address,
            level=self.level,
        )


class DelegationsResponse(BaseModel):
    """Body of ``GET /xtz/delegations``."""

    data: list[DelegationRecord] = Field(default_factory=list)
