"""
Data Models for the Loan Reconciliation MCP Server

Loan records, query request/response types, and the JSON-RPC envelope used
by the stdio session loop.
"""

import json
from decimal import Decimal
from typing import Annotated, Optional, List, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, computed_field, field_validator


RECONCILED = "reconciled"

# Decimal internally, plain JSON number on the wire
Amount = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(v), return_type=float, when_used="json"),
]


# ---------------------------------------------------------------------------
# Loan models
# ---------------------------------------------------------------------------

class LoanRecord(BaseModel):
    """One loan-reconciliation row. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    loan_id: str = Field(..., alias="loanId", description="Unique loan identifier")
    borrower_name: str = Field("", alias="borrowerName", description="Borrower name")
    servicer_loan_amount: Amount = Field(
        Decimal("0"), alias="servicerLoanAmount", description="Amount reported by the servicer"
    )
    fnma_loan_amount: Amount = Field(
        Decimal("0"), alias="fnmaLoanAmount", description="Amount reported by FNMA"
    )
    difference_amount: Amount = Field(
        Decimal("0"), alias="differenceAmount", description="Signed difference between the two amounts"
    )
    reconciled_status: str = Field("", alias="reconciledStatus", description="Reconciliation status label")

    @computed_field(alias="hasMismatch")
    @property
    def has_mismatch(self) -> bool:
        return self.difference_amount != 0

    @property
    def is_reconciled(self) -> bool:
        return self.reconciled_status.strip().lower() == RECONCILED


# ---------------------------------------------------------------------------
# Query models
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    """Arguments of the ``query_loans`` tool."""

    query: str = Field(..., description="Free-text query")
    limit: int = Field(100, description="Max records in the returned page")
    skip: int = Field(0, description="Records to skip before the page starts")

    @field_validator("limit", "skip", mode="before")
    @classmethod
    def _default_when_null(cls, v, info):
        if v is None:
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("limit", "skip")
    @classmethod
    def _clamp_negative(cls, v: int) -> int:
        return max(0, v)


class QueryMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query_type: str = Field("", alias="queryType")
    execution_time_ms: float = Field(0.0, alias="executionTimeMs")
    statistics: Dict[str, Union[int, float]] = Field(default_factory=dict)


class QueryResponse(BaseModel):
    """Result of one query: a page of records plus full match-set metadata."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = ""
    data: List[LoanRecord] = Field(default_factory=list)
    total_count: int = Field(0, alias="totalCount")
    metadata: QueryMetadata = Field(default_factory=QueryMetadata)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# JSON-RPC envelope
# ---------------------------------------------------------------------------

RequestId = Union[str, int]


class JsonRpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Optional[RequestId] = None
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _params_default(cls, v):
        return {} if v is None else v


class JsonRpcError(BaseModel):
    code: int
    message: str


class JsonRpcResponse(BaseModel):
    jsonrpc: str = "2.0"
    id: Optional[RequestId] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[JsonRpcError] = None

    def to_line(self) -> str:
        payload = self.model_dump(mode="json")
        # exactly one of result/error goes on the wire
        if self.error is None:
            payload.pop("error")
        else:
            payload.pop("result")
        return json.dumps(payload, ensure_ascii=False)
