"""
Request and Response Schemas

Pydantic models for the parameters of every UI-facing entry point.
Parameters are validated before any I/O; a validation failure becomes a
BadRequestError so malformed input is never confused with an upstream
failure.
"""
from typing import Any, Dict, List, Optional, Type, TypeVar
import logging

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from pnl_matrix.core.error_taxonomy import BadRequestError
from pnl_matrix.core.financial_semantics import (
    ALLOWED_TAX_NAMES,
    AccountKind,
    TaxScenario,
)
from pnl_matrix.core.reporting_calendar import MAX_YEAR, MIN_YEAR, is_month_key

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _check_month_key(value: str) -> str:
    if not is_month_key(value):
        raise ValueError("ym must be YYYY-MM with a month between 01 and 12")
    return value


class YearTreeRequest(BaseModel):
    """Full statement for one year."""
    year: int = Field(..., ge=MIN_YEAR, le=MAX_YEAR)


class BreakdownRequest(BaseModel):
    """Family/product pivot of one account kind."""
    year: int = Field(..., ge=MIN_YEAR, le=MAX_YEAR)
    kind: AccountKind


class ItemDetailRequest(BaseModel):
    """Per-product invoice lines behind one revenue or COGS cell."""
    ym: str
    kind: AccountKind

    @field_validator("ym")
    @classmethod
    def validate_ym(cls, v):
        return _check_month_key(v)


class TaxDetailRequest(BaseModel):
    """Per-product tax amounts behind one tax cell."""
    ym: str
    tax_name: str
    scenario: TaxScenario

    @field_validator("ym")
    @classmethod
    def validate_ym(cls, v):
        return _check_month_key(v)

    @field_validator("tax_name")
    @classmethod
    def validate_tax_name(cls, v):
        if v not in ALLOWED_TAX_NAMES:
            raise ValueError(f"taxName must be one of {', '.join(ALLOWED_TAX_NAMES)}")
        return v


class ExpenseDetailRequest(BaseModel):
    """Payable titles behind one expense-category cell."""
    ym: str
    group: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)

    @field_validator("ym")
    @classmethod
    def validate_ym(cls, v):
        return _check_month_key(v)


class FinancialRevenueDetailRequest(BaseModel):
    """Current-account postings behind one financial revenue category cell."""
    year: int = Field(..., ge=MIN_YEAR, le=MAX_YEAR)
    month: int = Field(..., ge=1, le=12)
    parent_category: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)

    @property
    def ym(self) -> str:
        return f"{self.year}-{self.month:02d}"


# Detail kinds that are not warehouse account kinds
TAX_DETAIL = "tax"
EXPENSE_DETAIL = "expense"
FINANCIAL_REVENUE_DETAIL = "financial_revenue"


class CellDetailRequest(BaseModel):
    """
    Generic drill-down request for one (month, kind) cell.

    The dimension key depends on the kind:
    - an AccountKind value: no extra key
    - "tax": tax_name and scenario
    - "expense": group and category
    - "financial_revenue": parent_category and category
    """
    ym: str
    kind: str
    tax_name: Optional[str] = None
    scenario: Optional[str] = None
    group: Optional[str] = None
    parent_category: Optional[str] = None
    category: Optional[str] = None

    @field_validator("ym")
    @classmethod
    def validate_ym(cls, v):
        return _check_month_key(v)

    @model_validator(mode="after")
    def validate_dimension_key(self):
        if self.kind == TAX_DETAIL:
            missing = [n for n in ("tax_name", "scenario") if not getattr(self, n)]
        elif self.kind == EXPENSE_DETAIL:
            missing = [n for n in ("group", "category") if not getattr(self, n)]
        elif self.kind == FINANCIAL_REVENUE_DETAIL:
            missing = [n for n in ("parent_category", "category") if not getattr(self, n)]
        elif AccountKind.parse(self.kind) is None:
            raise ValueError(f"unknown detail kind: {self.kind}")
        else:
            missing = []
        if missing:
            raise ValueError(f"missing {', '.join(missing)} for kind {self.kind}")
        return self

    def to_specific(self) -> BaseModel:
        """The typed request for this kind."""
        if self.kind == TAX_DETAIL:
            return validate_request(TaxDetailRequest, {
                "ym": self.ym, "tax_name": self.tax_name, "scenario": self.scenario,
            })
        if self.kind == EXPENSE_DETAIL:
            return validate_request(ExpenseDetailRequest, {
                "ym": self.ym, "group": self.group, "category": self.category,
            })
        if self.kind == FINANCIAL_REVENUE_DETAIL:
            year, month = self.ym.split("-")
            return validate_request(FinancialRevenueDetailRequest, {
                "year": int(year), "month": int(month),
                "parent_category": self.parent_category, "category": self.category,
            })
        return validate_request(ItemDetailRequest, {"ym": self.ym, "kind": self.kind})


class ErrorBody(BaseModel):
    """Structured error returned by every entry point."""
    category: str
    message: str
    user_message: str
    recoverable: bool
    recovery_actions: List[Dict[str, Any]] = Field(default_factory=list)
    http_status: int
    context: Dict[str, Any] = Field(default_factory=dict)


def validate_request(schema: Type[SchemaT], params: Dict[str, Any]) -> SchemaT:
    """
    Validate raw parameters against a request schema.

    Raises:
        BadRequestError: With one "field: message" entry per failure.
    """
    try:
        return schema.model_validate(params)
    except ValidationError as e:
        problems = []
        for err in e.errors(include_url=False, include_context=False, include_input=False):
            location = ".".join(str(part) for part in err.get("loc", ())) or schema.__name__
            problems.append(f"{location}: {err.get('msg', 'invalid')}")
        logger.debug(f"{schema.__name__} rejected: {problems}")
        raise BadRequestError("; ".join(problems), context={"errors": problems}) from e
